from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class FileMeta:
    size: int
    mode: int
    mtime_ns: int


@dataclass(slots=True)
class FileRecord:
    path: str
    sha256: str
    size: int
    mode: int
    mtime_ns: int


@dataclass(slots=True)
class Anchor:
    name: str
    created_at: datetime
    file_tree: dict[str, FileRecord] = field(default_factory=dict)
    description: str = ""
    tracked: bool = False
    git_commit: str | None = None
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def total_size(self) -> int:
        return sum(record.size for record in self.file_tree.values())

    def hashes(self) -> dict[str, str]:
        return {path: record.sha256 for path, record in self.file_tree.items()}


@dataclass(slots=True)
class AnchorSummary:
    name: str
    created_at: datetime
    tracked: bool
    file_count: int
    total_size: int
    description: str = ""


@dataclass(slots=True)
class GcResult:
    removed: int = 0
    freed_bytes: int = 0


@dataclass(slots=True)
class ModifiedEntry:
    path: str
    old_hash: str
    new_hash: str


@dataclass(slots=True)
class UnreadableEntry:
    path: str
    reason: str


@dataclass(slots=True)
class DiffResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[ModifiedEntry] = field(default_factory=list)
    unreadable: list[UnreadableEntry] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified or self.unreadable)


@dataclass(slots=True)
class SaveResult:
    anchor: Anchor
    unreadable: list[UnreadableEntry] = field(default_factory=list)


@dataclass(slots=True)
class RestoreResult:
    name: str
    written_paths: list[str] = field(default_factory=list)
    deleted_paths: list[str] = field(default_factory=list)
    unchanged_count: int = 0


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    TERMINATED = "terminated"


@dataclass(slots=True)
class ChangeEvent:
    path: str
    kind: ChangeKind
    is_directory: bool = False
    error: Exception | None = None


@dataclass(slots=True)
class JourneyStep:
    raw_command: str
    captured_stdout: str | None
    exit_status: int
    timestamp: datetime


class CheckpointKind(str, Enum):
    FILE_EXISTS = "file_exists"
    FILE_CONTAINS = "file_contains"
    COMMAND_SUCCEEDS = "command_succeeds"


@dataclass(slots=True)
class Checkpoint:
    """A check run after step ``step_index`` during replay."""

    name: str
    step_index: int
    kind: CheckpointKind
    target: str
    expected: str = ""


@dataclass(slots=True)
class Journey:
    name: str
    created_at: datetime
    steps: list[JourneyStep] = field(default_factory=list)
    description: str = ""
    variables: dict[str, str] = field(default_factory=dict)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class JourneySummary:
    name: str
    created_at: datetime
    step_count: int
    description: str = ""


@dataclass(slots=True)
class CheckpointResult:
    name: str
    passed: bool
    message: str = ""


@dataclass(slots=True)
class StepOutcome:
    index: int
    command: str
    recorded_status: int
    live_status: int | None
    live_output: str | None
    output_changed: bool = False
    executed: bool = True
    checkpoints: list[CheckpointResult] = field(default_factory=list)

    @property
    def status_changed(self) -> bool:
        return self.executed and self.live_status != self.recorded_status

    @property
    def failed_checkpoints(self) -> list[CheckpointResult]:
        return [result for result in self.checkpoints if not result.passed]

    @property
    def diverged(self) -> bool:
        return self.executed and (self.status_changed or bool(self.failed_checkpoints))


@dataclass(slots=True)
class PlaybackResult:
    journey: str
    started_at: datetime
    strict: bool = False
    dry_run: bool = False
    outcomes: list[StepOutcome] = field(default_factory=list)
    aborted: bool = False

    @property
    def divergences(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if outcome.diverged]

    @property
    def first_divergence(self) -> StepOutcome | None:
        divergences = self.divergences
        return divergences[0] if divergences else None

    @property
    def completed(self) -> bool:
        return not self.aborted


@dataclass(slots=True)
class PlaybackSummary:
    id: int
    journey: str
    started_at: datetime
    strict: bool
    dry_run: bool
    aborted: bool
    step_count: int
    divergences: list[StepOutcome] = field(default_factory=list)
