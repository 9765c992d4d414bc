from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from keel.config import DEFAULT_COMMAND_TIMEOUT


logger = logging.getLogger(__name__)

TIMEOUT_EXIT_STATUS = 124
SHELL_METACHARACTERS = frozenset(";&|<>$`()\n")
CWD_MARKER = "__keel_cwd__:"


@dataclass(slots=True)
class ExecutionResult:
    output: str
    exit_status: int


Execute = Callable[[str], Awaitable[ExecutionResult]]


def is_plain_cd(command: str) -> bool:
    """True for a bare `cd [dir]` the executor can apply without a shell."""
    if command != "cd" and not command.startswith("cd "):
        return False
    return not any(char in SHELL_METACHARACTERS for char in command)


class ShellExecutor:
    """Runs commands through the user's shell, tracking ``cd`` between commands."""

    def __init__(
        self,
        cwd: Path | None = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        env: dict[str, str] | None = None,
    ) -> None:
        self.cwd = (cwd or Path.cwd()).resolve()
        self.timeout = timeout
        self.env = env

    def _change_directory(self, command: str) -> ExecutionResult:
        try:
            parts = shlex.split(command)
        except ValueError as exc:
            return ExecutionResult(output=f"cd: {exc}\n", exit_status=1)
        if len(parts) > 2:
            return ExecutionResult(output="cd: too many arguments\n", exit_status=1)
        raw_target = parts[1] if len(parts) == 2 else "~"
        target = Path(os.path.expandvars(os.path.expanduser(raw_target)))
        if not target.is_absolute():
            target = self.cwd / target
        if not target.is_dir():
            return ExecutionResult(output=f"cd: {raw_target}: No such directory\n", exit_status=1)
        self.cwd = target.resolve()
        return ExecutionResult(output="", exit_status=0)

    def _wrap(self, command: str) -> str:
        # Appends a report of the final directory; the command's exit status is kept.
        return (
            f"{command}\n"
            "__keel_status=$?\n"
            f"printf '\\n{CWD_MARKER}%s\\n' \"$(pwd -P)\"\n"
            "exit $__keel_status\n"
        )

    def _take_cwd(self, output: str) -> str:
        marker = f"\n{CWD_MARKER}"
        position = output.rfind(marker)
        if position < 0:
            return output
        reported = output[position + len(marker):].strip()
        if reported and Path(reported).is_dir():
            self.cwd = Path(reported)
        return output[:position]

    async def execute(self, command: str) -> ExecutionResult:
        stripped = command.strip()
        if is_plain_cd(stripped):
            return self._change_directory(stripped)

        logger.debug("Running %r in %s", command, self.cwd)
        process = await asyncio.create_subprocess_shell(
            self._wrap(command),
            cwd=self.cwd,
            env=self.env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Command timed out after %ss: %s", self.timeout, command)
            return ExecutionResult(
                output=f"keel: command timed out after {self.timeout:g}s\n",
                exit_status=TIMEOUT_EXIT_STATUS,
            )
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        output = self._take_cwd(output)
        return ExecutionResult(output=output, exit_status=process.returncode or 0)

    __call__ = execute
