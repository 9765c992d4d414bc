"""Tests for journey replay."""

from datetime import datetime, timezone

import pytest

from keel.errors import ReplayDivergenceError
from keel.executor import ShellExecutor
from keel.models import Checkpoint, CheckpointKind, Journey, JourneyStep
from keel.player import JourneyPlayer


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _journey(name, *steps):
    return Journey(
        name=name,
        created_at=T0,
        steps=[JourneyStep(command, output, status, T0) for command, output, status in steps],
    )


class TestJourneyPlayer:
    @pytest.mark.asyncio
    async def test_lenient_replay_runs_every_step(self, tmp_path, store):
        """echo hi / false replay in order without raising."""
        journey = _journey("demo", ("echo hi", "hi\n", 0), ("false", "", 1))
        seen = []
        player = JourneyPlayer(ShellExecutor(tmp_path), store=store, on_step=seen.append)

        result = await player.play(journey)

        assert [outcome.command for outcome in result.outcomes] == ["echo hi", "false"]
        assert [outcome.live_status for outcome in result.outcomes] == [0, 1]
        assert result.divergences == []
        assert result.completed
        assert seen == result.outcomes

    @pytest.mark.asyncio
    async def test_lenient_replay_reports_divergence(self, tmp_path, store):
        """A different exit status is reported and replay carries on."""
        journey = _journey("drift", ("exit 2", "", 0), ("echo after", "after\n", 0))
        player = JourneyPlayer(ShellExecutor(tmp_path), store=store)

        result = await player.play(journey)

        assert [outcome.index for outcome in result.divergences] == [0]
        assert len(result.outcomes) == 2
        history = await store.list_playbacks("drift")
        assert [d.index for d in history[0].divergences] == [0]

    @pytest.mark.asyncio
    async def test_strict_replay_stops_at_first_divergence(self, tmp_path, store):
        """Strict mode raises with the partial result and keeps the history."""
        journey = _journey(
            "strict",
            ("echo hi", "hi\n", 0),
            ("false", "", 0),
            ("touch never-created", "", 0),
        )
        player = JourneyPlayer(ShellExecutor(tmp_path), strict=True, store=store)

        with pytest.raises(ReplayDivergenceError) as excinfo:
            await player.play(journey)

        result = excinfo.value.result
        assert len(result.outcomes) == 2
        assert result.aborted
        assert "step 2" in str(excinfo.value)
        assert not (tmp_path / "never-created").exists()
        history = await store.list_playbacks("strict")
        assert history[0].aborted and history[0].strict

    @pytest.mark.asyncio
    async def test_output_change_is_flagged_not_stored(self, tmp_path, store):
        """Output differences are noted while the journey stays untouched."""
        journey = _journey("out", ("echo new", "old\n", 0), ("true", None, 0))
        await store.save_journey(journey)

        result = await JourneyPlayer(ShellExecutor(tmp_path), store=store).play(journey)

        assert [outcome.output_changed for outcome in result.outcomes] == [True, False]
        assert result.divergences == []
        assert (await store.load_journey("out")).steps[0].captured_stdout == "old\n"

    @pytest.mark.asyncio
    async def test_dry_run_executes_nothing(self, tmp_path, store):
        """A dry run lists the steps without running them or saving history."""
        journey = _journey("dry", ("touch created", "", 0))

        result = await JourneyPlayer(ShellExecutor(tmp_path), dry_run=True, store=store).play(journey)

        assert [outcome.executed for outcome in result.outcomes] == [False]
        assert not (tmp_path / "created").exists()
        assert await store.list_playbacks("dry") == []


class TestVariables:
    @pytest.mark.asyncio
    async def test_defaults_fill_placeholders(self, tmp_path, store):
        """Without overrides each placeholder takes the recorded default."""
        journey = _journey("greet", ("echo {{ who }} {{unknown}}", "world {{unknown}}\n", 0))
        journey.variables = {"who": "world"}

        result = await JourneyPlayer(ShellExecutor(tmp_path), store=store).play(journey)

        assert result.outcomes[0].command == "echo world {{unknown}}"
        assert result.outcomes[0].live_output == "world {{unknown}}\n"

    @pytest.mark.asyncio
    async def test_overrides_win_over_defaults(self, tmp_path, store):
        """Values passed to the player replace the defaults."""
        journey = _journey("touch", ("touch {{name}}.txt", "", 0))
        journey.variables = {"name": "default"}

        await JourneyPlayer(ShellExecutor(tmp_path), variables={"name": "chosen"}).play(journey)

        assert (tmp_path / "chosen.txt").exists()
        assert not (tmp_path / "default.txt").exists()

    @pytest.mark.asyncio
    async def test_dry_run_shows_substituted_commands(self, tmp_path):
        """Dry runs list the commands as they would run."""
        journey = _journey("dry", ("deploy --env {{env}}", "", 0))
        journey.variables = {"env": "staging"}

        result = await JourneyPlayer(ShellExecutor(tmp_path), dry_run=True).play(journey)

        assert result.outcomes[0].command == "deploy --env staging"


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_passing_checkpoints(self, tmp_path, store):
        """Checkpoints that hold leave the replay without divergence."""
        journey = _journey("build", ("echo built > out.txt", "", 0), ("true", "", 0))
        journey.checkpoints = [
            Checkpoint("exists", 0, CheckpointKind.FILE_EXISTS, "out.txt"),
            Checkpoint("content", 0, CheckpointKind.FILE_CONTAINS, "out.txt", "built"),
            Checkpoint("command", 1, CheckpointKind.COMMAND_SUCCEEDS, "test -f out.txt"),
        ]

        result = await JourneyPlayer(ShellExecutor(tmp_path), store=store, root=tmp_path).play(journey)

        assert [len(outcome.checkpoints) for outcome in result.outcomes] == [2, 1]
        assert all(check.passed for outcome in result.outcomes for check in outcome.checkpoints)
        assert result.divergences == []

    @pytest.mark.asyncio
    async def test_failed_checkpoint_is_a_divergence(self, tmp_path, store):
        """A failing checkpoint marks its step divergent and is kept in history."""
        journey = _journey("missing", ("true", "", 0), ("echo after", "after\n", 0))
        journey.checkpoints = [Checkpoint("artifact", 0, CheckpointKind.FILE_EXISTS, "dist/app.whl")]

        result = await JourneyPlayer(ShellExecutor(tmp_path), store=store, root=tmp_path).play(journey)

        (outcome,) = result.divergences
        assert outcome.index == 0
        assert not outcome.status_changed
        assert outcome.failed_checkpoints[0].name == "artifact"
        assert len(result.outcomes) == 2
        history = await store.list_playbacks("missing")
        assert history[0].divergences[0].failed_checkpoints[0].name == "artifact"

    @pytest.mark.asyncio
    async def test_strict_stops_on_failed_checkpoint(self, tmp_path):
        """Strict mode aborts at a failed checkpoint and names it."""
        (tmp_path / "VERSION").write_text("1.0\n")
        journey = _journey("release", ("true", "", 0), ("touch released", "", 0))
        journey.variables = {"version": "2.0"}
        journey.checkpoints = [
            Checkpoint("version", 0, CheckpointKind.FILE_CONTAINS, "VERSION", "{{version}}")
        ]
        player = JourneyPlayer(ShellExecutor(tmp_path), strict=True, root=tmp_path)

        with pytest.raises(ReplayDivergenceError, match="checkpoint 'version'") as excinfo:
            await player.play(journey)

        assert excinfo.value.result.aborted
        assert "'2.0'" in str(excinfo.value)
        assert not (tmp_path / "released").exists()
