"""Tests for the debounced watchdog stream."""

import asyncio
import shutil

import pytest
from watchdog.events import (
    DirDeletedEvent,
    DirModifiedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from keel.errors import WatcherTerminatedError
from keel.filters import build_path_filter
from keel.models import ChangeKind
from keel.watcher import Watcher


class FakeObserver:
    """Stands in for a watchdog observer so tests can inject raw events."""

    def __init__(self):
        self.handler = None
        self.alive = False

    def schedule(self, handler, path, recursive=False):
        self.handler = handler

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.alive

    def emit(self, event):
        self.handler.on_any_event(event)


async def _next(stream, timeout=5.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


def _start(root, *, debounce_ms=50):
    observer = FakeObserver()
    watcher = Watcher(
        build_path_filter(),
        debounce_ms=debounce_ms,
        poll_interval=0.05,
        observer_factory=lambda: observer,
    )
    return watcher, watcher.start(root), observer


class TestWatchStream:
    @pytest.mark.asyncio
    async def test_burst_of_writes_collapses(self, project):
        """A create followed by writes reaches the consumer once."""
        watcher, stream, observer = _start(project)
        path = str(project / "new.txt")
        observer.emit(FileCreatedEvent(path))
        observer.emit(FileModifiedEvent(path))
        observer.emit(FileClosedEvent(path))

        event = await _next(stream)
        assert (event.path, event.kind) == ("new.txt", ChangeKind.CREATED)

        observer.emit(FileDeletedEvent(str(project / "f.txt")))
        event = await _next(stream)
        assert (event.path, event.kind) == ("f.txt", ChangeKind.REMOVED)
        await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_removal_is_not_delayed(self, project):
        """Removals overtake pending creates on other paths."""
        watcher, stream, observer = _start(project, debounce_ms=10_000)
        observer.emit(FileCreatedEvent(str(project / "a.txt")))
        observer.emit(FileDeletedEvent(str(project / "b.txt")))

        event = await _next(stream, timeout=1)

        assert (event.path, event.kind) == ("b.txt", ChangeKind.REMOVED)
        await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_per_path_order_is_kept(self, project):
        """A removal flushes the pending create for the same path first."""
        watcher, stream, observer = _start(project, debounce_ms=10_000)
        path = str(project / "tmp.txt")
        observer.emit(FileCreatedEvent(path))
        observer.emit(FileDeletedEvent(path))

        first = await _next(stream, timeout=1)
        second = await _next(stream, timeout=1)

        assert [first.kind, second.kind] == [ChangeKind.CREATED, ChangeKind.REMOVED]
        await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_move_becomes_remove_and_create(self, project):
        """A rename is reported as removal of the source and creation of the target."""
        watcher, stream, observer = _start(project)
        observer.emit(FileMovedEvent(str(project / "f.txt"), str(project / "g.txt")))

        removed = await _next(stream)
        created = await _next(stream)

        assert (removed.path, removed.kind) == ("f.txt", ChangeKind.REMOVED)
        assert (created.path, created.kind) == ("g.txt", ChangeKind.CREATED)
        await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_filtered_paths_and_directory_touches_are_ignored(self, project):
        """Excluded paths and directory mtime changes produce nothing."""
        watcher, stream, observer = _start(project)
        observer.emit(FileModifiedEvent(str(project / ".git" / "index")))
        observer.emit(DirModifiedEvent(str(project / "src")))
        observer.emit(FileDeletedEvent(str(project / "README.md")))

        event = await _next(stream)

        assert event.path == "README.md"
        await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_root_removal_terminates(self, project):
        """Losing the root ends the stream with a terminated event."""
        watcher, stream, observer = _start(project)
        observer.emit(DirDeletedEvent(str(project)))

        event = await _next(stream)

        assert event.kind is ChangeKind.TERMINATED
        assert isinstance(event.error, WatcherTerminatedError)
        with pytest.raises(StopAsyncIteration):
            await _next(stream)
        await watcher.stop(stream)
        assert not observer.alive

    @pytest.mark.asyncio
    async def test_close_delivers_pending_then_ends(self, project):
        """Stopping flushes pending events and then stops the iteration."""
        watcher, stream, observer = _start(project, debounce_ms=10_000)
        observer.emit(FileCreatedEvent(str(project / "late.txt")))
        await asyncio.sleep(0)

        await watcher.stop(stream)
        observer.emit(FileCreatedEvent(str(project / "after-close.txt")))

        event = await _next(stream, timeout=1)
        assert event.path == "late.txt"
        with pytest.raises(StopAsyncIteration):
            await _next(stream, timeout=1)
        assert stream.closed


class TestRealObserver:
    @pytest.mark.asyncio
    async def test_file_creation_is_reported(self, tmp_path):
        """A real file write comes through the default observer."""
        root = tmp_path / "watched"
        root.mkdir()
        watcher = Watcher(build_path_filter(), debounce_ms=50, poll_interval=0.1)
        stream = watcher.start(root)
        try:
            await asyncio.sleep(0.2)
            (root / "hello.txt").write_text("hi")

            seen = []
            while ("hello.txt", ChangeKind.CREATED) not in seen:
                event = await _next(stream)
                seen.append((event.path, event.kind))
        finally:
            await watcher.stop(stream)

    @pytest.mark.asyncio
    async def test_deleting_root_terminates(self, tmp_path):
        """Removing the watched directory ends the stream."""
        root = tmp_path / "watched"
        root.mkdir()
        watcher = Watcher(build_path_filter(), debounce_ms=50, poll_interval=0.1)
        stream = watcher.start(root)
        await asyncio.sleep(0.2)

        shutil.rmtree(root)

        kinds = []
        async def drain():
            async for event in stream:
                kinds.append(event.kind)

        await asyncio.wait_for(drain(), timeout=10)
        assert kinds[-1] is ChangeKind.TERMINATED
        await watcher.stop(stream)
