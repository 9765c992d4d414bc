from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Iterable

import aiosqlite

from keel.errors import AlreadyExistsError
from keel.models import (
    Anchor,
    AnchorSummary,
    Checkpoint,
    CheckpointKind,
    CheckpointResult,
    FileRecord,
    Journey,
    JourneyStep,
    JourneySummary,
    PlaybackResult,
    PlaybackSummary,
    StepOutcome,
)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS anchors (
    name TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    tracked INTEGER NOT NULL DEFAULT 0,
    git_commit TEXT,
    environment TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS anchor_files (
    anchor TEXT NOT NULL,
    path TEXT NOT NULL,
    sha256 TEXT NOT NULL,
    size INTEGER NOT NULL,
    mode INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    PRIMARY KEY (anchor, path)
);

CREATE TABLE IF NOT EXISTS journeys (
    name TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    variables TEXT NOT NULL DEFAULT '{}',
    environment TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS journey_steps (
    journey TEXT NOT NULL,
    position INTEGER NOT NULL,
    raw_command TEXT NOT NULL,
    captured_stdout TEXT,
    exit_status INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    PRIMARY KEY (journey, position)
);

CREATE TABLE IF NOT EXISTS journey_checkpoints (
    journey TEXT NOT NULL,
    position INTEGER NOT NULL,
    name TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    kind TEXT NOT NULL,
    target TEXT NOT NULL,
    expected TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (journey, position)
);

CREATE TABLE IF NOT EXISTS playbacks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    journey TEXT NOT NULL,
    started_at TEXT NOT NULL,
    strict INTEGER NOT NULL,
    dry_run INTEGER NOT NULL,
    aborted INTEGER NOT NULL,
    step_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS playback_divergences (
    playback_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    command TEXT NOT NULL,
    recorded_status INTEGER NOT NULL,
    live_status INTEGER,
    live_output TEXT,
    output_changed INTEGER NOT NULL,
    checkpoints TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (playback_id, position)
);
"""


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _file_row(anchor: str, record: FileRecord) -> tuple[str, str, str, int, int, int]:
    return (anchor, record.path, record.sha256, record.size, record.mode, record.mtime_ns)


class StateStore:
    """SQLite-backed persistence for anchors, journeys and playback history."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._ready = False

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=30)

    async def ensure_db(self) -> None:
        if self._ready:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        self._ready = True

    # anchors

    async def save_anchor(self, anchor: Anchor) -> None:
        await self.ensure_db()
        async with self._connect() as db:
            await db.execute("DELETE FROM anchor_files WHERE anchor = ?", (anchor.name,))
            await db.execute(
                """
                INSERT OR REPLACE INTO anchors
                    (name, created_at, description, tracked, git_commit, environment)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    anchor.name,
                    _ts(anchor.created_at),
                    anchor.description,
                    int(anchor.tracked),
                    anchor.git_commit,
                    json.dumps(anchor.environment, sort_keys=True),
                ),
            )
            if anchor.file_tree:
                await db.executemany(
                    """
                    INSERT INTO anchor_files (anchor, path, sha256, size, mode, mtime_ns)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [_file_row(anchor.name, record) for record in anchor.file_tree.values()],
                )
            await db.commit()

    async def load_anchor(self, name: str) -> Anchor | None:
        await self.ensure_db()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM anchors WHERE name = ?",
                (name,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return None
            cursor = await db.execute(
                """
                SELECT path, sha256, size, mode, mtime_ns FROM anchor_files
                WHERE anchor = ?
                """,
                (name,),
            )
            file_rows = await cursor.fetchall()
            await cursor.close()

        records = sorted(
            (
                FileRecord(
                    path=str(file_row["path"]),
                    sha256=str(file_row["sha256"]),
                    size=int(file_row["size"]),
                    mode=int(file_row["mode"]),
                    mtime_ns=int(file_row["mtime_ns"]),
                )
                for file_row in file_rows
            ),
            key=lambda record: record.path,
        )
        return Anchor(
            name=str(row["name"]),
            created_at=_parse_ts(str(row["created_at"])),
            description=str(row["description"]),
            tracked=bool(row["tracked"]),
            git_commit=None if row["git_commit"] is None else str(row["git_commit"]),
            environment=json.loads(row["environment"]),
            file_tree={record.path: record for record in records},
        )

    async def list_anchors(self) -> list[AnchorSummary]:
        await self.ensure_db()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT a.name, a.created_at, a.description, a.tracked,
                       COUNT(f.path) AS file_count,
                       COALESCE(SUM(f.size), 0) AS total_size
                FROM anchors a
                LEFT JOIN anchor_files f ON f.anchor = a.name
                GROUP BY a.name
                """
            )
            rows = await cursor.fetchall()
            await cursor.close()

        summaries = [
            AnchorSummary(
                name=str(row["name"]),
                created_at=_parse_ts(str(row["created_at"])),
                tracked=bool(row["tracked"]),
                file_count=int(row["file_count"]),
                total_size=int(row["total_size"]),
                description=str(row["description"]),
            )
            for row in rows
        ]
        summaries.sort(key=lambda summary: (summary.created_at, summary.name), reverse=True)
        return summaries

    async def set_tracked(self, name: str, tracked: bool) -> None:
        await self.ensure_db()
        async with self._connect() as db:
            await db.execute(
                "UPDATE anchors SET tracked = ? WHERE name = ?",
                (int(tracked), name),
            )
            await db.commit()

    async def apply_anchor_changes(
        self,
        name: str,
        upserts: Iterable[FileRecord],
        removals: Iterable[str],
    ) -> None:
        upsert_rows = [_file_row(name, record) for record in upserts]
        removal_rows = [(name, path) for path in removals]
        if not upsert_rows and not removal_rows:
            return
        await self.ensure_db()
        async with self._connect() as db:
            if removal_rows:
                await db.executemany(
                    "DELETE FROM anchor_files WHERE anchor = ? AND path = ?",
                    removal_rows,
                )
            if upsert_rows:
                await db.executemany(
                    """
                    INSERT OR REPLACE INTO anchor_files (anchor, path, sha256, size, mode, mtime_ns)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    upsert_rows,
                )
            await db.commit()

    async def delete_anchor(self, name: str) -> bool:
        await self.ensure_db()
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM anchors WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await db.execute("DELETE FROM anchor_files WHERE anchor = ?", (name,))
            await db.commit()
        return deleted

    async def referenced_hashes(self) -> set[str]:
        await self.ensure_db()
        async with self._connect() as db:
            cursor = await db.execute("SELECT DISTINCT sha256 FROM anchor_files")
            rows = await cursor.fetchall()
            await cursor.close()
        return {str(row[0]) for row in rows}

    # journeys

    async def save_journey(self, journey: Journey, *, replace: bool = False) -> None:
        await self.ensure_db()
        async with self._connect() as db:
            cursor = await db.execute("SELECT 1 FROM journeys WHERE name = ?", (journey.name,))
            exists = await cursor.fetchone() is not None
            await cursor.close()
            if exists and not replace:
                raise AlreadyExistsError("journey", journey.name)

            await db.execute("DELETE FROM journey_steps WHERE journey = ?", (journey.name,))
            await db.execute("DELETE FROM journey_checkpoints WHERE journey = ?", (journey.name,))
            await db.execute(
                """
                INSERT OR REPLACE INTO journeys
                    (name, created_at, description, variables, environment)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    journey.name,
                    _ts(journey.created_at),
                    journey.description,
                    json.dumps(journey.variables, sort_keys=True),
                    json.dumps(journey.environment, sort_keys=True),
                ),
            )
            if journey.checkpoints:
                await db.executemany(
                    """
                    INSERT INTO journey_checkpoints
                        (journey, position, name, step_index, kind, target, expected)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            journey.name,
                            position,
                            checkpoint.name,
                            checkpoint.step_index,
                            checkpoint.kind.value,
                            checkpoint.target,
                            checkpoint.expected,
                        )
                        for position, checkpoint in enumerate(journey.checkpoints)
                    ],
                )
            if journey.steps:
                await db.executemany(
                    """
                    INSERT INTO journey_steps
                        (journey, position, raw_command, captured_stdout, exit_status, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            journey.name,
                            position,
                            step.raw_command,
                            step.captured_stdout,
                            step.exit_status,
                            _ts(step.timestamp),
                        )
                        for position, step in enumerate(journey.steps)
                    ],
                )
            await db.commit()

    async def load_journey(self, name: str) -> Journey | None:
        await self.ensure_db()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM journeys WHERE name = ?",
                (name,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return None
            cursor = await db.execute(
                """
                SELECT raw_command, captured_stdout, exit_status, timestamp
                FROM journey_steps WHERE journey = ? ORDER BY position
                """,
                (name,),
            )
            step_rows = await cursor.fetchall()
            await cursor.close()
            cursor = await db.execute(
                """
                SELECT name, step_index, kind, target, expected
                FROM journey_checkpoints WHERE journey = ? ORDER BY position
                """,
                (name,),
            )
            checkpoint_rows = await cursor.fetchall()
            await cursor.close()

        return Journey(
            name=str(row["name"]),
            created_at=_parse_ts(str(row["created_at"])),
            description=str(row["description"]),
            variables=json.loads(row["variables"]),
            environment=json.loads(row["environment"]),
            checkpoints=[
                Checkpoint(
                    name=str(checkpoint["name"]),
                    step_index=int(checkpoint["step_index"]),
                    kind=CheckpointKind(checkpoint["kind"]),
                    target=str(checkpoint["target"]),
                    expected=str(checkpoint["expected"]),
                )
                for checkpoint in checkpoint_rows
            ],
            steps=[
                JourneyStep(
                    raw_command=str(step["raw_command"]),
                    captured_stdout=None
                    if step["captured_stdout"] is None
                    else str(step["captured_stdout"]),
                    exit_status=int(step["exit_status"]),
                    timestamp=_parse_ts(str(step["timestamp"])),
                )
                for step in step_rows
            ],
        )

    async def list_journeys(self) -> list[JourneySummary]:
        await self.ensure_db()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT j.name, j.created_at, j.description, COUNT(s.position) AS step_count
                FROM journeys j
                LEFT JOIN journey_steps s ON s.journey = j.name
                GROUP BY j.name
                """
            )
            rows = await cursor.fetchall()
            await cursor.close()

        summaries = [
            JourneySummary(
                name=str(row["name"]),
                created_at=_parse_ts(str(row["created_at"])),
                step_count=int(row["step_count"]),
                description=str(row["description"]),
            )
            for row in rows
        ]
        summaries.sort(key=lambda summary: (summary.created_at, summary.name), reverse=True)
        return summaries

    async def delete_journey(self, name: str) -> bool:
        await self.ensure_db()
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM journeys WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await db.execute("DELETE FROM journey_steps WHERE journey = ?", (name,))
            await db.execute("DELETE FROM journey_checkpoints WHERE journey = ?", (name,))
            await db.execute(
                """
                DELETE FROM playback_divergences WHERE playback_id IN
                    (SELECT id FROM playbacks WHERE journey = ?)
                """,
                (name,),
            )
            await db.execute("DELETE FROM playbacks WHERE journey = ?", (name,))
            await db.commit()
        return deleted

    # playback history

    async def record_playback(self, result: PlaybackResult) -> int:
        await self.ensure_db()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO playbacks (journey, started_at, strict, dry_run, aborted, step_count)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.journey,
                    _ts(result.started_at),
                    int(result.strict),
                    int(result.dry_run),
                    int(result.aborted),
                    len(result.outcomes),
                ),
            )
            playback_id = int(cursor.lastrowid)
            await cursor.close()
            divergences = result.divergences
            if divergences:
                await db.executemany(
                    """
                    INSERT INTO playback_divergences
                        (playback_id, position, command, recorded_status,
                         live_status, live_output, output_changed, checkpoints)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            playback_id,
                            outcome.index,
                            outcome.command,
                            outcome.recorded_status,
                            outcome.live_status,
                            outcome.live_output,
                            int(outcome.output_changed),
                            json.dumps(
                                [
                                    {"name": check.name, "message": check.message}
                                    for check in outcome.failed_checkpoints
                                ]
                            ),
                        )
                        for outcome in divergences
                    ],
                )
            await db.commit()
        return playback_id

    async def list_playbacks(self, journey: str | None = None) -> list[PlaybackSummary]:
        await self.ensure_db()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            if journey is None:
                cursor = await db.execute("SELECT * FROM playbacks ORDER BY id DESC")
            else:
                cursor = await db.execute(
                    "SELECT * FROM playbacks WHERE journey = ? ORDER BY id DESC",
                    (journey,),
                )
            rows = await cursor.fetchall()
            await cursor.close()
            cursor = await db.execute(
                "SELECT * FROM playback_divergences ORDER BY playback_id, position"
            )
            divergence_rows = await cursor.fetchall()
            await cursor.close()

        by_playback: dict[int, list[StepOutcome]] = {}
        for row in divergence_rows:
            by_playback.setdefault(int(row["playback_id"]), []).append(
                StepOutcome(
                    index=int(row["position"]),
                    command=str(row["command"]),
                    recorded_status=int(row["recorded_status"]),
                    live_status=None if row["live_status"] is None else int(row["live_status"]),
                    live_output=None if row["live_output"] is None else str(row["live_output"]),
                    output_changed=bool(row["output_changed"]),
                    checkpoints=[
                        CheckpointResult(name=str(item["name"]), passed=False, message=str(item["message"]))
                        for item in json.loads(row["checkpoints"])
                    ],
                )
            )

        return [
            PlaybackSummary(
                id=int(row["id"]),
                journey=str(row["journey"]),
                started_at=_parse_ts(str(row["started_at"])),
                strict=bool(row["strict"]),
                dry_run=bool(row["dry_run"]),
                aborted=bool(row["aborted"]),
                step_count=int(row["step_count"]),
                divergences=by_playback.get(int(row["id"]), []),
            )
            for row in rows
        ]
