from __future__ import annotations

import hashlib
import logging
import os
import stat as stat_module
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from keel.config import DEFAULT_CHUNK_SIZE
from keel.filters import PathFilter
from keel.models import FileMeta, FileRecord, UnreadableEntry

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

# Files touched this close to the previous snapshot may have changed within
# the same mtime tick, so their hash is recomputed.
RACY_WINDOW_NS = 2_000_000_000

Hasher = Callable[[Path, Callable[[int], None] | None], str]


@dataclass(slots=True)
class ScanResult:
    records: dict[str, FileRecord] = field(default_factory=dict)
    unreadable: list[UnreadableEntry] = field(default_factory=list)

    def hashes(self) -> dict[str, str]:
        return {path: record.sha256 for path, record in self.records.items()}


def sha256_file(
    path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
    return digest.hexdigest()


def _meta_from_stat(st: os.stat_result) -> FileMeta:
    return FileMeta(
        size=st.st_size,
        mode=stat_module.S_IMODE(st.st_mode),
        mtime_ns=st.st_mtime_ns,
    )


def enumerate_tree(
    root: Path,
    path_filter: PathFilter | None = None,
    *,
    subdir: str = "",
) -> list[tuple[str, FileMeta]]:
    """List regular files under ``root`` as ``(relative_path, meta)`` sorted by path.

    Symlinks are never followed or reported. Directories rejected by the
    filter are pruned without descending into them.
    """
    root = root.resolve()
    path_filter = path_filter or PathFilter()
    entries: list[tuple[str, FileMeta]] = []
    start = root / subdir if subdir else root
    if start.is_symlink():
        return entries

    for dirpath, dirnames, filenames in os.walk(start, followlinks=False):
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"

        kept_dirs = []
        for dirname in dirnames:
            if (current / dirname).is_symlink():
                continue
            if path_filter.prunes_directory(f"{prefix}{dirname}"):
                continue
            kept_dirs.append(dirname)
        dirnames[:] = kept_dirs

        for filename in filenames:
            relative_path = f"{prefix}{filename}"
            if not path_filter.matches(relative_path):
                continue
            try:
                st = (current / filename).lstat()
            except FileNotFoundError:
                continue
            if not stat_module.S_ISREG(st.st_mode):
                continue
            entries.append((relative_path, _meta_from_stat(st)))

    entries.sort(key=lambda item: item[0])
    return entries


def stat_path(root: Path, relative_path: str) -> FileMeta | None:
    """Return metadata for a regular file, or ``None`` when it is gone or not a file."""
    try:
        st = (root / relative_path).lstat()
    except (FileNotFoundError, NotADirectoryError):
        return None
    if not stat_module.S_ISREG(st.st_mode):
        return None
    return _meta_from_stat(st)


def _can_reuse(
    previous: FileRecord | None,
    meta: FileMeta,
    previous_scanned_ns: int | None,
) -> bool:
    if previous is None or previous.size != meta.size or previous.mtime_ns != meta.mtime_ns:
        return False
    if previous_scanned_ns is None:
        return True
    return meta.mtime_ns + RACY_WINDOW_NS <= previous_scanned_ns


def _default_hasher(chunk_size: int) -> Hasher:
    def _hash(path: Path, on_chunk: Callable[[int], None] | None) -> str:
        return sha256_file(path, chunk_size, on_chunk=on_chunk)

    return _hash


def _record_entry(
    root: Path,
    relative_path: str,
    meta: FileMeta,
    result: ScanResult,
    *,
    hasher: Hasher,
    previous_records: dict[str, FileRecord],
    previous_scanned_ns: int | None,
    on_hash_chunk: Callable[[int], None] | None = None,
) -> None:
    previous = previous_records.get(relative_path)
    if _can_reuse(previous, meta, previous_scanned_ns):
        assert previous is not None
        result.records[relative_path] = FileRecord(
            path=relative_path,
            sha256=previous.sha256,
            size=meta.size,
            mode=meta.mode,
            mtime_ns=meta.mtime_ns,
        )
        return

    try:
        sha256 = hasher(root / relative_path, on_hash_chunk)
    except FileNotFoundError:
        # Removed between enumeration and hashing.
        return
    except OSError as exc:
        logger.warning("Cannot read %s: %s", relative_path, exc)
        result.unreadable.append(UnreadableEntry(path=relative_path, reason=str(exc)))
        return

    result.records[relative_path] = FileRecord(
        path=relative_path,
        sha256=sha256,
        size=meta.size,
        mode=meta.mode,
        mtime_ns=meta.mtime_ns,
    )


def scan_tree(
    root: Path,
    *,
    path_filter: PathFilter | None = None,
    previous_records: dict[str, FileRecord] | None = None,
    previous_scanned_ns: int | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hasher: Hasher | None = None,
) -> ScanResult:
    root = root.resolve()
    previous_records = previous_records or {}
    hasher = hasher or _default_hasher(chunk_size)
    result = ScanResult()
    for relative_path, meta in enumerate_tree(root, path_filter):
        _record_entry(
            root,
            relative_path,
            meta,
            result,
            hasher=hasher,
            previous_records=previous_records,
            previous_scanned_ns=previous_scanned_ns,
        )
    return result


def scan_paths(
    root: Path,
    relative_paths: list[str] | set[str] | tuple[str, ...],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hasher: Hasher | None = None,
) -> tuple[ScanResult, list[str]]:
    """Re-hash only ``relative_paths``; also return the ones that no longer exist."""
    root = root.resolve()
    hasher = hasher or _default_hasher(chunk_size)
    result = ScanResult()
    missing: list[str] = []

    for relative_path in sorted(set(relative_paths)):
        if not relative_path:
            continue
        meta = stat_path(root, relative_path)
        if meta is None:
            missing.append(relative_path)
            continue
        _record_entry(
            root,
            relative_path,
            meta,
            result,
            hasher=hasher,
            previous_records={},
            previous_scanned_ns=None,
        )
        if relative_path not in result.records and not any(
            entry.path == relative_path for entry in result.unreadable
        ):
            missing.append(relative_path)

    return result, missing


def _shorten_path(path: str, max_len: int = 64) -> str:
    if len(path) <= max_len:
        return path
    keep = max_len - 3
    head = keep // 2
    tail = keep - head
    return f"{path[:head]}...{path[-tail:]}"


def scan_tree_with_progress(
    root: Path,
    *,
    path_filter: PathFilter | None = None,
    previous_records: dict[str, FileRecord] | None = None,
    previous_scanned_ns: int | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hasher: Hasher | None = None,
    console: "Console | None" = None,
) -> ScanResult:
    from rich.progress import (
        BarColumn,
        DownloadColumn,
        Progress,
        SpinnerColumn,
        TaskProgressColumn,
        TextColumn,
        TimeRemainingColumn,
        TransferSpeedColumn,
    )

    root = root.resolve()
    previous_records = previous_records or {}
    hasher = hasher or _default_hasher(chunk_size)

    if console is not None:
        with console.status("Discovering files to scan..."):
            entries = enumerate_tree(root, path_filter)
    else:
        entries = enumerate_tree(root, path_filter)

    result = ScanResult()
    total_files = len(entries)
    if total_files == 0:
        return result

    total_bytes = sum(meta.size for _, meta in entries)
    progress_total = total_bytes if total_bytes > 0 else total_files
    processed_bytes = 0

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]Scanning"),
        BarColumn(),
        TaskProgressColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        TextColumn("{task.fields[file_progress]}"),
        TextColumn("{task.fields[path]}"),
        console=console,
        transient=False,
        expand=True,
    ) as progress:
        task_id = progress.add_task(
            "scan",
            total=progress_total,
            file_progress=f"0/{total_files} files",
            path="",
        )

        def _advance_bytes(delta: int) -> None:
            nonlocal processed_bytes
            processed_bytes += delta
            progress.update(task_id, completed=min(processed_bytes, progress_total))

        for index, (relative_path, meta) in enumerate(entries, start=1):
            progress.update(
                task_id,
                file_progress=f"{index}/{total_files} files",
                path=_shorten_path(relative_path),
            )
            start_bytes = processed_bytes
            _record_entry(
                root,
                relative_path,
                meta,
                result,
                hasher=hasher,
                previous_records=previous_records,
                previous_scanned_ns=previous_scanned_ns,
                on_hash_chunk=_advance_bytes if total_bytes > 0 else None,
            )
            if total_bytes > 0:
                processed_bytes = start_bytes + meta.size
                progress.update(task_id, completed=min(processed_bytes, progress_total))
            else:
                progress.advance(task_id, 1)

    return result
