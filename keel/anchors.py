from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from keel.blob_store import BlobStore
from keel.config import KeelConfig
from keel.differ import diff_trees
from keel.environment import capture_environment, git_head
from keel.errors import (
    AlreadyExistsError,
    BusyError,
    DataIntegrityError,
    NotFoundError,
    PathFailure,
    RestoreError,
)
from keel.models import (
    Anchor,
    AnchorSummary,
    ChangeEvent,
    ChangeKind,
    DiffResult,
    FileRecord,
    GcResult,
    RestoreResult,
    SaveResult,
    utcnow,
)
from keel.scanner import (
    ScanResult,
    enumerate_tree,
    scan_paths,
    scan_tree,
    scan_tree_with_progress,
    sha256_file,
)
from keel.state_db import StateStore
from keel.watcher import Watcher, WatchStream

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)


def _ns(value: datetime) -> int:
    return int(value.timestamp() * 1_000_000_000)


def _delete_local_file(root: Path, relative_path: str) -> None:
    path = root / relative_path
    path.unlink()
    current = path.parent
    while current != root:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


@dataclass(slots=True)
class TrackingHandle:
    name: str
    stream: WatchStream
    started_at: datetime = field(default_factory=utcnow)
    task: asyncio.Task[None] | None = None
    failures: list[PathFailure] = field(default_factory=list)
    error: BaseException | None = None
    applied_events: int = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def wait(self) -> None:
        if self.task is not None:
            await asyncio.shield(self.task)


class AnchorManager:
    def __init__(
        self,
        config: KeelConfig,
        *,
        store: StateStore | None = None,
        blobs: BlobStore | None = None,
        watcher: Watcher | None = None,
    ) -> None:
        self.config = config
        self.root = config.project_root_path
        self.path_filter = config.path_filter()
        self.store = store or StateStore(config.state_db_path)
        self.blobs = blobs or BlobStore(config.objects_path, chunk_size=config.chunk_size)
        self.watcher = watcher or Watcher(self.path_filter, debounce_ms=config.debounce_ms)
        self._locks: dict[str, asyncio.Lock] = {}
        self._tracking: dict[str, TrackingHandle] = {}
        self._trees: dict[str, Anchor] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def tracking(self, name: str) -> TrackingHandle | None:
        handle = self._tracking.get(name)
        if handle is not None and handle.running:
            return handle
        return None

    async def _current(self, name: str) -> Anchor:
        anchor = self._trees.get(name)
        if anchor is not None:
            return anchor
        anchor = await self.store.load_anchor(name)
        if anchor is None:
            raise NotFoundError("anchor", name)
        return anchor

    # save / restore

    async def save(
        self,
        name: str,
        description: str = "",
        *,
        console: "Console | None" = None,
    ) -> SaveResult:
        async with self._lock(name):
            previous = self._trees.get(name) or await self.store.load_anchor(name)
            previous_records: dict[str, FileRecord] = {}
            previous_scanned_ns = None
            if previous is not None:
                previous_records = {
                    path: record
                    for path, record in previous.file_tree.items()
                    if self.blobs.contains(record.sha256)
                }
                previous_scanned_ns = _ns(previous.created_at)

            scan_fn = scan_tree if console is None else scan_tree_with_progress
            kwargs = {} if console is None else {"console": console}
            scan: ScanResult = await asyncio.to_thread(
                scan_fn,
                self.root,
                path_filter=self.path_filter,
                previous_records=previous_records,
                previous_scanned_ns=previous_scanned_ns,
                chunk_size=self.config.chunk_size,
                hasher=self.blobs.put_file,
                **kwargs,
            )

            anchor = Anchor(
                name=name,
                created_at=utcnow(),
                description=description,
                file_tree=dict(sorted(scan.records.items())),
                tracked=self.tracking(name) is not None,
                git_commit=await asyncio.to_thread(git_head, self.root),
                environment=capture_environment(self.config.capture_env),
            )
            await self.store.save_anchor(anchor)
            if anchor.tracked:
                self._trees[name] = anchor
            logger.info("Saved anchor %s (%d files)", name, len(anchor.file_tree))
            return SaveResult(anchor=anchor, unreadable=scan.unreadable)

    async def restore(self, name: str, *, wait: bool = True) -> RestoreResult:
        lock = self._lock(name)
        if not wait and lock.locked():
            raise BusyError(f"Anchor '{name}' is busy applying changes")
        async with lock:
            anchor = await self._current(name)
            result, failures = await asyncio.to_thread(self._restore_tree, anchor)
        logger.info(
            "Restored anchor %s: %d written, %d deleted, %d unchanged",
            name,
            len(result.written_paths),
            len(result.deleted_paths),
            result.unchanged_count,
        )
        if failures:
            raise RestoreError(failures, result)
        return result

    def _restore_tree(self, anchor: Anchor) -> tuple[RestoreResult, list[PathFailure]]:
        result = RestoreResult(name=anchor.name)
        failures: list[PathFailure] = []

        for relative_path, _ in enumerate_tree(self.root, self.path_filter):
            if relative_path in anchor.file_tree:
                continue
            try:
                _delete_local_file(self.root, relative_path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                failures.append(PathFailure(relative_path, str(exc)))
                continue
            result.deleted_paths.append(relative_path)

        for relative_path, record in anchor.file_tree.items():
            target = self.root / relative_path
            try:
                if self._matches_live(target, record):
                    if target.stat().st_mode & 0o7777 != record.mode:
                        target.chmod(record.mode)
                    result.unchanged_count += 1
                    continue
                if target.is_dir() and not target.is_symlink():
                    raise IsADirectoryError(f"directory in the way of {relative_path}")
                if target.is_symlink():
                    target.unlink()
                self.blobs.write_to(record.sha256, target, mode=record.mode)
            except (OSError, DataIntegrityError) as exc:
                failures.append(PathFailure(relative_path, str(exc)))
                continue
            result.written_paths.append(relative_path)

        return result, failures

    def _matches_live(self, target: Path, record: FileRecord) -> bool:
        if target.is_symlink() or not target.is_file():
            return False
        if target.stat().st_size != record.size:
            return False
        try:
            return sha256_file(target, self.config.chunk_size) == record.sha256
        except OSError:
            return False

    # inspection

    async def list(self) -> list[AnchorSummary]:
        return await self.store.list_anchors()

    async def show(self, name: str) -> Anchor:
        return await self._current(name)

    async def diff(self, name: str) -> DiffResult:
        anchor = await self._current(name)
        scan: ScanResult = await asyncio.to_thread(
            scan_tree,
            self.root,
            path_filter=self.path_filter,
            previous_records=anchor.file_tree,
            previous_scanned_ns=_ns(anchor.created_at),
            chunk_size=self.config.chunk_size,
        )
        return diff_trees(anchor.hashes(), scan.hashes(), unreadable=scan.unreadable)

    async def diff_anchors(self, old_name: str, new_name: str) -> DiffResult:
        old = await self._current(old_name)
        new = await self._current(new_name)
        return diff_trees(old.hashes(), new.hashes())

    async def delete(self, name: str) -> None:
        await self.stop(name)
        async with self._lock(name):
            if not await self.store.delete_anchor(name):
                raise NotFoundError("anchor", name)
        logger.info("Deleted anchor %s", name)

    async def install(self, anchor: Anchor, *, replace: bool = False) -> Anchor:
        """Store an anchor built elsewhere; its blobs must already be in the store."""
        existing = await self.store.load_anchor(anchor.name)
        if existing is not None:
            if not replace:
                raise AlreadyExistsError("anchor", anchor.name)
            await self.stop(anchor.name)
        missing = [r.path for r in anchor.file_tree.values() if not self.blobs.contains(r.sha256)]
        if missing:
            raise DataIntegrityError(
                f"Anchor '{anchor.name}' references missing blobs: {', '.join(missing)}"
            )
        installed = Anchor(
            name=anchor.name,
            created_at=anchor.created_at,
            description=anchor.description,
            file_tree=dict(sorted(anchor.file_tree.items())),
            tracked=False,
            git_commit=anchor.git_commit,
            environment=dict(anchor.environment),
        )
        async with self._lock(anchor.name):
            await self.store.save_anchor(installed)
        return installed

    async def gc(self) -> GcResult:
        async with contextlib.AsyncExitStack() as stack:
            for name in sorted(self._tracking):
                await stack.enter_async_context(self._lock(name))
            referenced = await self.store.referenced_hashes()
            for anchor in self._trees.values():
                referenced.update(anchor.hashes().values())
            return await asyncio.to_thread(self._sweep, referenced)

    def _sweep(self, referenced: set[str]) -> GcResult:
        result = GcResult()
        for sha256 in list(self.blobs.iter_hashes()):
            if sha256 in referenced:
                continue
            size = self.blobs.blob_path(sha256).stat().st_size
            if self.blobs.delete(sha256):
                result.removed += 1
                result.freed_bytes += size
        logger.info("Removed %d unreferenced blobs", result.removed)
        return result

    # tracking

    async def auto(self, name: str, *, foreground: bool = False) -> TrackingHandle:
        async with self._lock(name):
            handle = self.tracking(name)
            if handle is None:
                handle = await self._start_tracking(name)
                logger.info("Tracking anchor %s", name)
        if foreground:
            await handle.wait()
        return handle

    async def _start_tracking(self, name: str) -> TrackingHandle:
        anchor = await self.store.load_anchor(name)
        if anchor is None:
            raise NotFoundError("anchor", name)
        stream = self.watcher.start(self.root)
        handle = TrackingHandle(name=name, stream=stream)
        try:
            await self._reconcile(handle, anchor)
            anchor.tracked = True
            await self.store.set_tracked(name, True)
        except BaseException:
            await self.watcher.stop(stream)
            raise
        self._trees[name] = anchor
        self._tracking[name] = handle
        handle.task = asyncio.create_task(self._consume(handle), name=f"keel-track-{name}")
        return handle

    async def _reconcile(self, handle: TrackingHandle, anchor: Anchor) -> None:
        scan: ScanResult = await asyncio.to_thread(
            scan_tree,
            self.root,
            path_filter=self.path_filter,
            previous_records={
                path: record
                for path, record in anchor.file_tree.items()
                if self.blobs.contains(record.sha256)
            },
            previous_scanned_ns=_ns(anchor.created_at),
            chunk_size=self.config.chunk_size,
            hasher=self.blobs.put_file,
        )
        for entry in scan.unreadable:
            handle.failures.append(PathFailure(entry.path, entry.reason))

        unreadable = {entry.path for entry in scan.unreadable}
        removals = [
            path for path in anchor.file_tree if path not in scan.records and path not in unreadable
        ]
        upserts = [
            record
            for path, record in scan.records.items()
            if anchor.file_tree.get(path) != record
        ]
        if not removals and not upserts:
            return
        for path in removals:
            del anchor.file_tree[path]
        for record in upserts:
            anchor.file_tree[record.path] = record
        anchor.file_tree = dict(sorted(anchor.file_tree.items()))
        await self.store.apply_anchor_changes(anchor.name, upserts, removals)
        logger.info(
            "Reconciled anchor %s: %d updated, %d removed",
            anchor.name,
            len(upserts),
            len(removals),
        )

    async def _consume(self, handle: TrackingHandle) -> None:
        try:
            async for event in handle.stream:
                if event.kind is ChangeKind.TERMINATED:
                    handle.error = event.error
                    break
                async with self._lock(handle.name):
                    await self._apply_event(handle, event)
                handle.applied_events += 1
        except Exception as exc:
            logger.exception("Tracking for anchor %s failed", handle.name)
            handle.error = exc
            await self.watcher.stop(handle.stream)
        finally:
            if self._tracking.get(handle.name) is handle:
                del self._tracking[handle.name]
                self._trees.pop(handle.name, None)
                await self.store.set_tracked(handle.name, False)
            logger.info("Stopped tracking anchor %s", handle.name)

    async def _apply_event(self, handle: TrackingHandle, event: ChangeEvent) -> None:
        anchor = self._trees[handle.name]
        prefix = f"{event.path}/"

        if event.is_directory:
            affected = {path for path in anchor.file_tree if path.startswith(prefix)}
            if event.kind is ChangeKind.CREATED:
                entries = await asyncio.to_thread(
                    enumerate_tree, self.root, self.path_filter, subdir=event.path
                )
                affected.update(path for path, _ in entries)
        else:
            affected = {event.path}
        if not affected:
            return

        scan, missing = await asyncio.to_thread(
            scan_paths,
            self.root,
            sorted(affected),
            chunk_size=self.config.chunk_size,
            hasher=self.blobs.put_file,
        )
        for entry in scan.unreadable:
            logger.warning("Tracking %s: cannot read %s: %s", handle.name, entry.path, entry.reason)
            handle.failures.append(PathFailure(entry.path, entry.reason))

        removals = [path for path in missing if path in anchor.file_tree]
        upserts = [
            record
            for path, record in scan.records.items()
            if anchor.file_tree.get(path) != record
        ]
        if not removals and not upserts:
            return

        inserted = False
        for path in removals:
            del anchor.file_tree[path]
        for record in upserts:
            inserted = inserted or record.path not in anchor.file_tree
            anchor.file_tree[record.path] = record
        if inserted:
            anchor.file_tree = dict(sorted(anchor.file_tree.items()))
        await self.store.apply_anchor_changes(anchor.name, upserts, removals)
        logger.debug(
            "Anchor %s: %s %s (%d updated, %d removed)",
            anchor.name,
            event.kind.value,
            event.path,
            len(upserts),
            len(removals),
        )

    async def stop(self, name: str) -> None:
        handle = self._tracking.get(name)
        if handle is None:
            anchor = await self.store.load_anchor(name)
            if anchor is None:
                raise NotFoundError("anchor", name)
            if anchor.tracked:
                await self.store.set_tracked(name, False)
            return
        await self.watcher.stop(handle.stream)
        if handle.task is not None:
            await handle.task
