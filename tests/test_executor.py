"""Tests for the shell executor."""

import pytest

from keel.executor import TIMEOUT_EXIT_STATUS, ShellExecutor, is_plain_cd


@pytest.mark.asyncio
async def test_output_and_status(tmp_path):
    """stdout and stderr are captured together with the exit status."""
    executor = ShellExecutor(tmp_path)

    ok = await executor("echo hi")
    failed = await executor("echo oops >&2; exit 3")

    assert (ok.output, ok.exit_status) == ("hi\n", 0)
    assert (failed.output, failed.exit_status) == ("oops\n", 3)


@pytest.mark.asyncio
async def test_cd_persists_between_commands(tmp_path):
    """cd changes the working directory of later commands."""
    (tmp_path / "sub").mkdir()
    executor = ShellExecutor(tmp_path)

    changed = await executor("cd sub")
    pwd = await executor("pwd")
    missing = await executor("cd nowhere")

    assert changed.exit_status == 0
    assert pwd.output.strip() == str((tmp_path / "sub").resolve())
    assert missing.exit_status == 1
    assert executor.cwd == (tmp_path / "sub").resolve()


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path):
    """Commands over the time limit are killed and report 124."""
    executor = ShellExecutor(tmp_path, timeout=0.2)

    result = await executor("sleep 5")

    assert result.exit_status == TIMEOUT_EXIT_STATUS
    assert "timed out" in result.output


@pytest.mark.asyncio
async def test_cd_chained_with_other_commands(tmp_path):
    """A cd joined to other commands runs in the shell instead of the builtin."""
    (tmp_path / "build").mkdir()
    executor = ShellExecutor(tmp_path)

    chained = await executor("cd build && echo hi")
    sequenced = await executor("cd ..; pwd")

    assert (chained.output, chained.exit_status) == ("hi\n", 0)
    assert sequenced.exit_status == 0
    assert sequenced.output.strip() == str(tmp_path.resolve())
    assert "too many arguments" not in chained.output + sequenced.output


@pytest.mark.asyncio
async def test_shell_cd_carries_over(tmp_path):
    """A directory change made inside a compound command applies to later commands."""
    (tmp_path / "build").mkdir()
    executor = ShellExecutor(tmp_path)

    await executor("cd build && true")
    pwd = await executor("pwd")
    failed = await executor("cd build; false")

    assert pwd.output.strip() == str((tmp_path / "build").resolve())
    assert executor.cwd == (tmp_path / "build").resolve()
    assert failed.exit_status == 1


def test_plain_cd_detection():
    assert is_plain_cd("cd")
    assert is_plain_cd("cd sub/dir")
    assert not is_plain_cd("cd build && make")
    assert not is_plain_cd("cd build; pwd")
    assert not is_plain_cd("cd $HOME")
    assert not is_plain_cd("cdrecord --help")
