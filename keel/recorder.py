from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Protocol, TextIO

from keel.errors import ConcurrentAccessError, RecordingClosedError
from keel.environment import capture_environment
from keel.executor import Execute
from keel.models import Checkpoint, Journey, JourneyStep, utcnow
from keel.state_db import StateStore
from keel.variables import substitute_variables

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({"stop", "exit"})


@dataclass(slots=True)
class RecordingHandle:
    name: str
    description: str = ""
    started_at: datetime = field(default_factory=utcnow)
    steps: list[JourneyStep] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    closed: bool = False
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)


class JourneyRecorder:
    def __init__(self, store: StateStore, *, capture_env: Iterable[str] = ()) -> None:
        self.store = store
        self.capture_env = list(capture_env)

    def begin(
        self,
        name: str,
        description: str = "",
        variables: dict[str, str] | None = None,
    ) -> RecordingHandle:
        logger.info("Recording journey %s", name)
        return RecordingHandle(name=name, description=description, variables=dict(variables or {}))

    def append(
        self,
        handle: RecordingHandle,
        command: str,
        captured_output: str | None,
        exit_status: int,
    ) -> JourneyStep:
        if not handle._guard.acquire(blocking=False):
            raise ConcurrentAccessError(f"Recording '{handle.name}' is already being appended to")
        try:
            if handle.closed:
                raise RecordingClosedError(f"Recording '{handle.name}' has ended")
            step = JourneyStep(
                raw_command=command,
                captured_stdout=captured_output,
                exit_status=exit_status,
                timestamp=utcnow(),
            )
            handle.steps.append(step)
            return step
        finally:
            handle._guard.release()

    def add_checkpoint(self, handle: RecordingHandle, checkpoint: Checkpoint) -> Checkpoint:
        """Attach a checkpoint to a step that has already been recorded."""
        if not handle._guard.acquire(blocking=False):
            raise ConcurrentAccessError(f"Recording '{handle.name}' is already being appended to")
        try:
            if handle.closed:
                raise RecordingClosedError(f"Recording '{handle.name}' has ended")
            if not 0 <= checkpoint.step_index < len(handle.steps):
                raise ValueError(
                    f"Checkpoint '{checkpoint.name}' refers to step {checkpoint.step_index + 1}, "
                    f"but only {len(handle.steps)} step(s) were recorded"
                )
            handle.checkpoints.append(checkpoint)
            return checkpoint
        finally:
            handle._guard.release()

    async def end(self, handle: RecordingHandle) -> Journey:
        if not handle._guard.acquire(blocking=False):
            raise ConcurrentAccessError(f"Recording '{handle.name}' is already being appended to")
        try:
            if handle.closed:
                raise RecordingClosedError(f"Recording '{handle.name}' has ended")
            journey = Journey(
                name=handle.name,
                created_at=handle.started_at,
                description=handle.description,
                steps=list(handle.steps),
                variables=dict(handle.variables),
                checkpoints=list(handle.checkpoints),
                environment=capture_environment(self.capture_env),
            )
            await self.store.save_journey(journey)
            handle.closed = True
        finally:
            handle._guard.release()

        logger.info("Saved journey %s (%d steps)", journey.name, len(journey.steps))
        return journey


class CommandSource(Protocol):
    async def read(self) -> str | None:
        """Return the next command line, or ``None`` once input has ended."""
        ...


class IterableCommandSource:
    def __init__(self, lines: Iterable[str]) -> None:
        self._lines = iter(lines)

    async def read(self) -> str | None:
        return next(self._lines, None)


class StreamCommandSource:
    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    async def read(self) -> str | None:
        line = await asyncio.to_thread(self._stream.readline)
        if line == "":
            return None
        return line.rstrip("\r\n")


class ConsoleCommandSource:
    """Interactive prompt; Ctrl+D ends the session."""

    def __init__(self, console: "Console", prompt: str = "[bold cyan]keel>[/bold cyan] ") -> None:
        self._console = console
        self._prompt = prompt

    async def read(self) -> str | None:
        try:
            return await asyncio.to_thread(self._console.input, self._prompt)
        except EOFError:
            return None


async def record_session(
    recorder: JourneyRecorder,
    name: str,
    source: CommandSource,
    execute: Execute,
    *,
    description: str = "",
    variables: dict[str, str] | None = None,
    on_step: Callable[[JourneyStep], None] | None = None,
) -> Journey:
    handle = recorder.begin(name, description, variables)
    while True:
        line = await source.read()
        if line is None:
            break
        stripped = line.strip()
        if stripped in STOP_WORDS:
            break
        if not stripped:
            continue
        result = await execute(substitute_variables(line, handle.variables))
        step = recorder.append(handle, line, result.output, result.exit_status)
        if on_step is not None:
            on_step(step)
    return await recorder.end(handle)
