from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keel.models import PlaybackResult, RestoreResult


class KeelError(Exception):
    """Base class for all keel failures."""


class ConfigError(KeelError):
    pass


class NotFoundError(KeelError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind.capitalize()} '{name}' not found")
        self.kind = kind
        self.name = name


class AlreadyExistsError(KeelError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind.capitalize()} '{name}' already exists")
        self.kind = kind
        self.name = name


class IOFailure(KeelError):
    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class DataIntegrityError(KeelError):
    pass


class BusyError(KeelError):
    pass


class ConcurrentAccessError(KeelError):
    pass


class RecordingClosedError(KeelError):
    pass


class WatcherTerminatedError(KeelError):
    pass


class ArchiveError(KeelError):
    pass


class TransportError(KeelError):
    pass


@dataclass(slots=True)
class PathFailure:
    path: str
    cause: str

    def __str__(self) -> str:
        return f"{self.path}: {self.cause}"


class RestoreError(IOFailure):
    """Raised after a restore finished with at least one failing path."""

    def __init__(self, failures: list[PathFailure], result: RestoreResult) -> None:
        self.failures = sorted(failures, key=lambda item: item.path)
        self.result = result
        lines = "\n".join(f"  {failure}" for failure in self.failures)
        KeelError.__init__(
            self,
            f"Restore of '{result.name}' failed for {len(self.failures)} path(s):\n{lines}",
        )
        self.path = self.failures[0].path if self.failures else ""


class ReplayDivergenceError(KeelError):
    def __init__(self, result: PlaybackResult) -> None:
        outcome = result.first_divergence
        if outcome is None:
            message = f"Journey '{result.journey}' diverged"
        elif not outcome.status_changed and outcome.failed_checkpoints:
            failed = outcome.failed_checkpoints[0]
            message = (
                f"Journey '{result.journey}' diverged at step {outcome.index + 1} "
                f"({outcome.command!r}): checkpoint '{failed.name}' failed: {failed.message}"
            )
        else:
            message = (
                f"Journey '{result.journey}' diverged at step {outcome.index + 1} "
                f"({outcome.command!r}): expected exit {outcome.recorded_status}, "
                f"got {outcome.live_status}"
            )
        super().__init__(message)
        self.result = result
