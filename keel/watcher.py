from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from keel.config import DEFAULT_DEBOUNCE_MS
from keel.errors import WatcherTerminatedError
from keel.filters import PathFilter
from keel.models import ChangeEvent, ChangeKind


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5

# watchdog reports a write-close as "closed"; treat it as a content change.
_RAW_KINDS = {
    "created": ChangeKind.CREATED,
    "modified": ChangeKind.MODIFIED,
    "closed": ChangeKind.MODIFIED,
    "deleted": ChangeKind.REMOVED,
}


@dataclass(slots=True)
class _Pending:
    event: ChangeEvent
    timer: asyncio.TimerHandle | None


class _QueueingHandler(FileSystemEventHandler):
    def __init__(self, stream: WatchStream) -> None:
        super().__init__()
        self._stream = stream

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._stream._from_thread(event)


class WatchStream:
    """Async iterator over debounced change events for one watched root.

    Runs until stopped or terminated and cannot be restarted.
    """

    def __init__(
        self,
        root: Path,
        *,
        path_filter: PathFilter,
        debounce_seconds: float,
        poll_interval: float,
        observer_factory: Callable[[], Observer],
    ) -> None:
        self.root = root.resolve()
        self._root_str = os.fsdecode(self.root)
        self._filter = path_filter
        self._debounce = debounce_seconds
        self._poll_interval = poll_interval
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._pending: dict[str, _Pending] = {}
        self._loop = asyncio.get_running_loop()
        self._observer = observer_factory()
        self._monitor: asyncio.Task[None] | None = None
        self._shutdown: asyncio.Task[None] | None = None
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _start(self) -> None:
        self._observer.schedule(_QueueingHandler(self), self._root_str, recursive=True)
        self._observer.start()
        self._monitor = self._loop.create_task(self._watch_health())
        logger.debug("Watching %s", self.root)

    # observer thread

    def _from_thread(self, event: FileSystemEvent) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._ingest, event)
        except RuntimeError:
            # Loop already closed; nothing left to deliver to.
            logger.debug("Dropping event after loop shutdown: %s", event)

    # event loop

    def _relative(self, raw_path: str | bytes) -> str | None:
        path = os.fsdecode(raw_path)
        if path == self._root_str:
            return ""
        prefix = self._root_str.rstrip(os.sep) + os.sep
        if not path.startswith(prefix):
            return None
        return Path(path[len(prefix):]).as_posix()

    def _accepts(self, relative_path: str, is_directory: bool) -> bool:
        if is_directory:
            return not self._filter.prunes_directory(relative_path)
        return self._filter.matches(relative_path)

    def _ingest(self, event: FileSystemEvent) -> None:
        if self._closed:
            return

        if event.event_type == "moved":
            src = self._relative(event.src_path)
            dest = self._relative(event.dest_path)
            if src == "":
                self._terminate("watched root was moved")
                return
            if src:
                self._route(src, ChangeKind.REMOVED, event.is_directory)
            if dest:
                self._route(dest, ChangeKind.CREATED, event.is_directory)
            return

        kind = _RAW_KINDS.get(event.event_type)
        if kind is None:
            return
        relative_path = self._relative(event.src_path)
        if relative_path is None:
            return
        if relative_path == "":
            if kind is ChangeKind.REMOVED:
                self._terminate("watched root was removed")
            return
        if event.is_directory and kind is ChangeKind.MODIFIED:
            return
        self._route(relative_path, kind, event.is_directory)

    def _route(self, relative_path: str, kind: ChangeKind, is_directory: bool) -> None:
        if not self._accepts(relative_path, is_directory):
            return
        change = ChangeEvent(path=relative_path, kind=kind, is_directory=is_directory)

        if kind is ChangeKind.MODIFIED:
            pending = self._pending.get(relative_path)
            if pending is not None:
                return
        else:
            self._flush(relative_path)

        if kind is ChangeKind.REMOVED or self._debounce <= 0:
            self._queue.put_nowait(change)
            return

        timer = self._loop.call_later(self._debounce, self._flush, relative_path)
        self._pending[relative_path] = _Pending(event=change, timer=timer)

    def _flush(self, relative_path: str) -> None:
        pending = self._pending.pop(relative_path, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
        self._queue.put_nowait(pending.event)

    def _flush_all(self) -> None:
        for relative_path in list(self._pending):
            self._flush(relative_path)

    def _terminate(self, reason: str) -> None:
        if self._closed:
            return
        logger.warning("Watcher for %s terminated: %s", self.root, reason)
        self._closed = True
        self._flush_all()
        self._queue.put_nowait(
            ChangeEvent(
                path="",
                kind=ChangeKind.TERMINATED,
                error=WatcherTerminatedError(f"{self.root}: {reason}"),
            )
        )
        self._queue.put_nowait(None)
        if self._monitor is not None and self._monitor is not asyncio.current_task():
            self._monitor.cancel()
        self._shutdown = self._loop.create_task(asyncio.to_thread(self._shutdown_observer))

    async def _watch_health(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            if self._closed:
                return
            if not self.root.is_dir():
                self._terminate("watched root no longer exists")
            elif not self._observer.is_alive():
                self._terminate("observer thread stopped")

    def _shutdown_observer(self) -> None:
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=10)

    async def close(self) -> None:
        """Stop observing, deliver pending events, then end the stream."""
        if self._closed:
            if self._shutdown is not None:
                await self._shutdown
            return
        if self._monitor is not None:
            self._monitor.cancel()
        await asyncio.to_thread(self._shutdown_observer)
        # Events the observer queued before it stopped are still delivered.
        await asyncio.sleep(0)
        if self._closed:
            return
        self._closed = True
        self._flush_all()
        self._queue.put_nowait(None)

    def __aiter__(self) -> WatchStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration
        return event


class Watcher:
    def __init__(
        self,
        path_filter: PathFilter | None = None,
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.path_filter = path_filter or PathFilter()
        self.debounce_seconds = max(0, debounce_ms) / 1000.0
        self.poll_interval = poll_interval
        self.observer_factory = observer_factory

    def start(self, root: Path) -> WatchStream:
        """Begin watching ``root``; must be called from a running event loop."""
        if not root.is_dir():
            raise WatcherTerminatedError(f"{root}: not a directory")
        stream = WatchStream(
            root,
            path_filter=self.path_filter,
            debounce_seconds=self.debounce_seconds,
            poll_interval=self.poll_interval,
            observer_factory=self.observer_factory,
        )
        stream._start()
        return stream

    async def stop(self, stream: WatchStream) -> None:
        await stream.close()
