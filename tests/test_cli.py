"""End-to-end tests for the keel command line."""

import logging

import pytest
from typer.testing import CliRunner

from keel.cli import app
from keel.log import resolve_log_level


runner = CliRunner()


def _out(result) -> str:
    return " ".join(result.output.split())


@pytest.fixture
def initialized(project, monkeypatch):
    monkeypatch.chdir(project)
    result = runner.invoke(app, ["init", str(project)])
    assert result.exit_code == 0, result.output
    return project


class TestInit:
    def test_writes_config_and_storage(self, project, monkeypatch):
        """init creates .keel.json and the storage directory."""
        monkeypatch.chdir(project)

        result = runner.invoke(app, ["init", ".", "--debounce-ms", "100"])

        assert result.exit_code == 0, result.output
        assert (project / ".keel.json").is_file()
        assert (project / ".keel" / "state.db").is_file()

    def test_refuses_to_overwrite(self, initialized):
        """A second init needs --force."""
        result = runner.invoke(app, ["init", str(initialized)])

        assert result.exit_code == 1
        assert "already exists" in _out(result)
        assert runner.invoke(app, ["init", str(initialized), "--force"]).exit_code == 0

    def test_commands_need_init(self, tmp_path, monkeypatch):
        """Without a config the user is told to run keel init."""
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(app, ["anchor", "list"])

        assert result.exit_code == 1
        assert "keel init" in _out(result)


class TestAnchorCommands:
    def test_save_diff_restore(self, initialized):
        """The x -> y scenario through the CLI."""
        assert runner.invoke(app, ["anchor", "save", "base", "-m", "first"]).exit_code == 0
        (initialized / "f.txt").write_text("y")

        listed = runner.invoke(app, ["anchor", "list"])
        diffed = runner.invoke(app, ["anchor", "diff", "base"])
        restored = runner.invoke(app, ["anchor", "restore", "base"])

        assert "base" in _out(listed)
        assert "Modified (1)" in _out(diffed)
        assert "f.txt" in _out(diffed)
        assert restored.exit_code == 0, restored.output
        assert (initialized / "f.txt").read_text() == "x"

    def test_clean_diff(self, initialized):
        """A fresh anchor has no changes against the tree."""
        runner.invoke(app, ["anchor", "save", "base"])

        result = runner.invoke(app, ["anchor", "diff", "base"])

        assert "No changes detected." in _out(result)

    def test_unknown_anchor(self, initialized):
        """Missing anchors exit with status 1."""
        result = runner.invoke(app, ["anchor", "restore", "missing"])

        assert result.exit_code == 1
        assert "missing" in _out(result)

    def test_delete_and_gc(self, initialized):
        """Deleting an anchor and collecting garbage both succeed."""
        runner.invoke(app, ["anchor", "save", "base"])

        deleted = runner.invoke(app, ["anchor", "delete", "base"])
        collected = runner.invoke(app, ["gc"])

        assert deleted.exit_code == 0, deleted.output
        assert collected.exit_code == 0, collected.output
        assert "Removed 3 unreferenced blob(s)" in _out(collected)

    def test_export_import(self, initialized, tmp_path):
        """An exported anchor can be imported under a new name."""
        runner.invoke(app, ["anchor", "save", "base"])
        archive = tmp_path / "base.json.gz"

        exported = runner.invoke(app, ["anchor", "export", "base", str(archive)])
        imported = runner.invoke(app, ["anchor", "import", str(archive), "--name", "copy"])

        assert exported.exit_code == 0, exported.output
        assert imported.exit_code == 0, imported.output
        assert "copy" in runner.invoke(app, ["anchor", "list"]).output


class TestJourneyCommands:
    def _record(self, root, name, commands):
        script = root.parent / f"{name}.txt"
        script.write_text("".join(f"{command}\n" for command in commands))
        return runner.invoke(app, ["journey", "record", name, "--from-file", str(script)])

    def test_record_play_history(self, initialized):
        """echo hi / false is recorded and replays without divergence."""
        recorded = self._record(initialized, "demo", ["echo hi", "false"])

        assert recorded.exit_code == 0, recorded.output
        assert "Saved journey demo (2 step(s))" in _out(recorded)

        played = runner.invoke(app, ["journey", "play", "demo"])
        assert played.exit_code == 0, played.output
        assert "without divergence" in _out(played)

        shown = runner.invoke(app, ["journey", "show", "demo"])
        assert "echo hi" in _out(shown)
        assert "demo" in runner.invoke(app, ["journey", "list"]).output
        assert "demo" in runner.invoke(app, ["journey", "history", "demo"]).output

    def test_strict_play_fails_on_divergence(self, initialized):
        """--strict exits 1 when a step's exit status changes."""
        (initialized / "marker").write_text("")
        self._record(initialized, "check", ["test -f marker", "echo done"])
        (initialized / "marker").unlink()

        lenient = runner.invoke(app, ["journey", "play", "check"])
        strict = runner.invoke(app, ["journey", "play", "check", "--strict"])

        assert lenient.exit_code == 0
        assert "1 divergent step(s)" in _out(lenient)
        assert strict.exit_code == 1
        assert "diverged at step 1" in _out(strict)

    def test_dry_run(self, initialized):
        """--dry-run runs nothing."""
        self._record(initialized, "touchy", ["echo setup"])

        result = runner.invoke(app, ["journey", "play", "touchy", "--dry-run"])

        assert result.exit_code == 0
        assert "1 step(s) would run." in _out(result)

    def test_record_refuses_existing_name(self, initialized):
        """Recording never silently replaces a journey."""
        self._record(initialized, "demo", ["echo hi"])

        again = self._record(initialized, "demo", ["echo bye"])

        assert again.exit_code == 1
        assert "already exists" in _out(again)

    def test_variables_and_checkpoints(self, initialized):
        """--var declares defaults, play can override them, and checkpoints are checked."""
        script = initialized.parent / "vars.txt"
        script.write_text("echo {{greeting}} > note.txt\n")
        recorded = runner.invoke(
            app, ["journey", "record", "note", "--from-file", str(script), "--var", "greeting=hello"]
        )
        assert recorded.exit_code == 0, recorded.output
        assert (initialized / "note.txt").read_text() == "hello\n"

        added = runner.invoke(
            app,
            ["journey", "checkpoint", "note", "greeted", "--step", "1",
             "--file-contains", "note.txt", "--text", "hello"],
        )
        assert added.exit_code == 0, added.output
        shown = _out(runner.invoke(app, ["journey", "show", "note"]))
        assert "variable greeting" in shown
        assert "checkpoint greeted after step 1" in shown

        played = runner.invoke(app, ["journey", "play", "note", "--strict", "--var", "greeting=bye"])

        assert played.exit_code == 1
        assert "checkpoint 'greeted' failed" in _out(played)
        assert (initialized / "note.txt").read_text() == "bye\n"

    def test_checkpoint_needs_one_kind(self, initialized):
        """Exactly one checkpoint kind must be given."""
        self._record(initialized, "demo", ["echo hi"])

        result = runner.invoke(app, ["journey", "checkpoint", "demo", "c", "--step", "1"])

        assert result.exit_code == 2

    def test_export_import_delete(self, initialized, tmp_path):
        """A journey survives export, delete and import."""
        self._record(initialized, "demo", ["echo hi"])
        archive = tmp_path / "demo.json"

        assert runner.invoke(app, ["journey", "export", "demo", str(archive)]).exit_code == 0
        assert runner.invoke(app, ["journey", "delete", "demo"]).exit_code == 0
        imported = runner.invoke(app, ["journey", "import", str(archive)])

        assert imported.exit_code == 0, imported.output
        assert "echo hi" in runner.invoke(app, ["journey", "show", "demo"]).output


class TestLogLevel:
    def test_verbose_flags(self):
        assert resolve_log_level(1) == logging.INFO
        assert resolve_log_level(2) == logging.DEBUG

    def test_env_level(self, monkeypatch):
        monkeypatch.setenv("KEEL_LOG_LEVEL", "error")

        assert resolve_log_level(0) == logging.ERROR
