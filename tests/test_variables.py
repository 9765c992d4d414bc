"""Tests for journey variables and environment capture."""

import pytest

from keel.environment import capture_environment, git_head
from keel.errors import ConfigError
from keel.variables import parse_assignments, resolve_variables, substitute_variables


class TestSubstitution:
    def test_only_declared_names_are_replaced(self):
        command = "docker run --format '{{.ID}}' {{ image }} {{tag}}"

        assert (
            substitute_variables(command, {"image": "app"})
            == "docker run --format '{{.ID}}' app {{tag}}"
        )

    def test_assignments(self):
        assert parse_assignments(["env=prod", "url=http://x?a=b"]) == {
            "env": "prod",
            "url": "http://x?a=b",
        }
        with pytest.raises(ConfigError):
            parse_assignments(["no-equals"])


class TestResolution:
    def test_override_then_prompt_then_default(self):
        """--var beats the prompt; an empty answer keeps the default."""
        asked = []

        def prompt(name, default):
            asked.append(name)
            return {"region": "eu"}.get(name, "")

        values = resolve_variables(
            {"env": "dev", "region": "us", "tier": "free"},
            {"env": "prod"},
            prompt,
        )

        assert values == {"env": "prod", "region": "eu", "tier": "free"}
        assert asked == ["region", "tier"]

    def test_unknown_override(self):
        with pytest.raises(ConfigError, match="nope"):
            resolve_variables({"env": "dev"}, {"nope": "1"})


class TestEnvironment:
    def test_capture_matches_patterns(self):
        env = {"PYTHONPATH": "src", "PYTHONHASHSEED": "0", "HOME": "/root", "LANG": "C"}

        assert capture_environment(["PYTHON*", "LANG"], env) == {
            "LANG": "C",
            "PYTHONHASHSEED": "0",
            "PYTHONPATH": "src",
        }

    def test_git_head_outside_repository(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))

        assert git_head(tmp_path) is None
