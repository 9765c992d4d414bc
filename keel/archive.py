from __future__ import annotations

import base64
import gzip
import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from keel.anchors import AnchorManager
from keel.blob_store import atomic_write_bytes
from keel.errors import ArchiveError, NotFoundError
from keel.models import Anchor, Checkpoint, CheckpointKind, FileRecord, Journey, JourneyStep
from keel.state_db import StateStore


logger = logging.getLogger(__name__)

ARCHIVE_VERSION = 1
ANCHOR_FORMAT = "keel.anchor"
JOURNEY_FORMAT = "keel.journey"


def _require(data: dict[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError as exc:
        raise ArchiveError(f"Archive is missing field '{key}'") from exc


def _str_dict(value: Any) -> dict[str, str]:
    return {str(key): str(item) for key, item in dict(value).items()}


def _check_header(data: Any, expected_format: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ArchiveError("Archive must be a JSON object")
    found = data.get("format")
    if found != expected_format:
        raise ArchiveError(f"Expected a {expected_format} archive, found {found!r}")
    version = data.get("version")
    if version != ARCHIVE_VERSION:
        raise ArchiveError(f"Unsupported {expected_format} archive version: {version!r}")
    return data


def anchor_to_dict(anchor: Anchor, blobs: dict[str, bytes] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "format": ANCHOR_FORMAT,
        "version": ARCHIVE_VERSION,
        "name": anchor.name,
        "created_at": anchor.created_at.isoformat(),
        "description": anchor.description,
        "tracked": anchor.tracked,
        "git_commit": anchor.git_commit,
        "environment": dict(anchor.environment),
        "files": [
            {
                "path": record.path,
                "sha256": record.sha256,
                "size": record.size,
                "mode": record.mode,
                "mtime_ns": record.mtime_ns,
            }
            for record in anchor.file_tree.values()
        ],
    }
    if blobs is not None:
        payload["blobs"] = {
            sha256: base64.b64encode(data).decode("ascii") for sha256, data in sorted(blobs.items())
        }
    return payload


def anchor_from_dict(data: Any) -> tuple[Anchor, dict[str, bytes]]:
    data = _check_header(data, ANCHOR_FORMAT)
    try:
        records = [
            FileRecord(
                path=str(_require(item, "path")),
                sha256=str(_require(item, "sha256")),
                size=int(_require(item, "size")),
                mode=int(_require(item, "mode")),
                mtime_ns=int(_require(item, "mtime_ns")),
            )
            for item in _require(data, "files")
        ]
        anchor = Anchor(
            name=str(_require(data, "name")),
            created_at=datetime.fromisoformat(str(_require(data, "created_at"))),
            description=str(data.get("description", "")),
            tracked=bool(data.get("tracked", False)),
            git_commit=None if data.get("git_commit") is None else str(data["git_commit"]),
            environment=_str_dict(data.get("environment", {})),
            file_tree={record.path: record for record in sorted(records, key=lambda r: r.path)},
        )
        blobs = {
            str(sha256): base64.b64decode(encoded, validate=True)
            for sha256, encoded in dict(data.get("blobs", {})).items()
        }
    except (TypeError, ValueError) as exc:
        raise ArchiveError(f"Malformed anchor archive: {exc}") from exc

    for sha256, content in blobs.items():
        if hashlib.sha256(content).hexdigest() != sha256:
            raise ArchiveError(f"Blob {sha256} in archive does not match its hash")
    return anchor, blobs


def journey_to_dict(journey: Journey) -> dict[str, Any]:
    return {
        "format": JOURNEY_FORMAT,
        "version": ARCHIVE_VERSION,
        "name": journey.name,
        "created_at": journey.created_at.isoformat(),
        "description": journey.description,
        "variables": dict(journey.variables),
        "environment": dict(journey.environment),
        "steps": [
            {
                "raw_command": step.raw_command,
                "captured_stdout": step.captured_stdout,
                "exit_status": step.exit_status,
                "timestamp": step.timestamp.isoformat(),
            }
            for step in journey.steps
        ],
        "checkpoints": [
            {
                "name": checkpoint.name,
                "step_index": checkpoint.step_index,
                "kind": checkpoint.kind.value,
                "target": checkpoint.target,
                "expected": checkpoint.expected,
            }
            for checkpoint in journey.checkpoints
        ],
    }


def journey_from_dict(data: Any) -> Journey:
    data = _check_header(data, JOURNEY_FORMAT)
    try:
        steps = [
            JourneyStep(
                raw_command=str(_require(item, "raw_command")),
                captured_stdout=None
                if item.get("captured_stdout") is None
                else str(item["captured_stdout"]),
                exit_status=int(_require(item, "exit_status")),
                timestamp=datetime.fromisoformat(str(_require(item, "timestamp"))),
            )
            for item in _require(data, "steps")
        ]
        checkpoints = [
            Checkpoint(
                name=str(_require(item, "name")),
                step_index=int(_require(item, "step_index")),
                kind=CheckpointKind(_require(item, "kind")),
                target=str(_require(item, "target")),
                expected=str(item.get("expected", "")),
            )
            for item in data.get("checkpoints", [])
        ]
        return Journey(
            name=str(_require(data, "name")),
            created_at=datetime.fromisoformat(str(_require(data, "created_at"))),
            description=str(data.get("description", "")),
            steps=steps,
            variables=_str_dict(data.get("variables", {})),
            checkpoints=checkpoints,
            environment=_str_dict(data.get("environment", {})),
        )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ArchiveError(f"Malformed journey archive: {exc}") from exc


def write_archive(path: Path, payload: dict[str, Any]) -> Path:
    if path.name.endswith(".gz"):
        data = gzip.compress(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    else:
        data = (json.dumps(payload, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
    atomic_write_bytes(path, data)
    return path


def read_archive(path: Path) -> dict[str, Any]:
    raw = path.read_bytes()
    try:
        if path.name.endswith(".gz"):
            raw = gzip.decompress(raw)
        data = json.loads(raw.decode("utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ArchiveError(f"Cannot read archive {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ArchiveError(f"Archive {path} must contain a JSON object")
    return data


async def export_anchor(manager: AnchorManager, name: str, path: Path) -> Path:
    anchor = await manager.show(name)
    blobs = {record.sha256: manager.blobs.get(record.sha256) for record in anchor.file_tree.values()}
    write_archive(path, anchor_to_dict(anchor, blobs))
    logger.info("Exported anchor %s to %s", name, path)
    return path


async def import_anchor(
    manager: AnchorManager,
    path: Path,
    *,
    name: str | None = None,
    replace: bool = False,
) -> Anchor:
    anchor, blobs = anchor_from_dict(read_archive(path))
    if name:
        anchor.name = name
    for content in blobs.values():
        manager.blobs.put_bytes(content)
    installed = await manager.install(anchor, replace=replace)
    logger.info("Imported anchor %s from %s", installed.name, path)
    return installed


async def export_journey(store: StateStore, name: str, path: Path) -> Path:
    journey = await store.load_journey(name)
    if journey is None:
        raise NotFoundError("journey", name)
    write_archive(path, journey_to_dict(journey))
    logger.info("Exported journey %s to %s", name, path)
    return path


async def import_journey(
    store: StateStore,
    path: Path,
    *,
    name: str | None = None,
    replace: bool = False,
) -> Journey:
    journey = journey_from_dict(read_archive(path))
    if name:
        journey.name = name
    await store.save_journey(journey, replace=replace)
    logger.info("Imported journey %s from %s", journey.name, path)
    return journey
