"""Watchdog bridge: OS file events on the observer thread into a bounded asyncio queue.

The observer thread never blocks. It schedules a non-blocking put on the event
loop; when the queue is full the event is dropped and an overflow callback asks
the engine for a full rescan instead.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from watchdog.events import (
    DirDeletedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from vault_mcp.engine.models import CHANGED, REMOVED
from vault_mcp.engine.walker import is_included, relative_to_root

logger = logging.getLogger(__name__)


class VaultEventHandler(FileSystemEventHandler):
    """
    Translates watchdog events into (relative path, kind) pairs.

    Key behaviors:
    - created/modified collapse to "changed", deleted to "removed"
    - a single move event becomes "removed" on the old path plus "changed" on the new one
    - untracked, hidden and excluded paths are filtered out
    - directory moves and deletions request a rescan, since not every platform
      reports the files inside them
    """

    def __init__(
        self,
        vault_root: Path,
        push: Callable[[str, str], None],
        on_rescan: Callable[[], None],
        exclude: Sequence[str] = (),
    ):
        super().__init__()
        self.vault_root = vault_root
        self.exclude = tuple(exclude)
        self._push = push
        self._on_rescan = on_rescan

    def _forward(self, path: str | bytes, kind: str) -> None:
        if isinstance(path, bytes):
            path = path.decode()
        relative_path = relative_to_root(self.vault_root, path)
        if relative_path is None or not is_included(relative_path, self.exclude):
            return
        self._push(relative_path, kind)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, CHANGED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, CHANGED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if isinstance(event, DirDeletedEvent):
            self._on_rescan()
        else:
            self._forward(event.src_path, REMOVED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, DirMovedEvent):
            self._on_rescan()
            return
        self._forward(event.src_path, REMOVED)
        self._forward(event.dest_path, CHANGED)


class VaultWatcher:
    """Owns the watchdog observer and the queue it feeds."""

    def __init__(
        self,
        vault_root: Path,
        queue: asyncio.Queue,
        loop: asyncio.AbstractEventLoop,
        on_overflow: Callable[[], None],
        exclude: Sequence[str] = (),
    ):
        self.vault_root = vault_root
        self._queue = queue
        self._loop = loop
        self._on_overflow = on_overflow
        self._handler = VaultEventHandler(
            vault_root, self.push, self._request_rescan, exclude=exclude
        )
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Watcher already running")
            return
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.vault_root), recursive=True)
        self._observer.daemon = True
        self._observer.start()
        logger.info("Watching %s for changes", self.vault_root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        if self._observer.is_alive():
            logger.warning("Watcher thread did not stop cleanly")
        self._observer = None

    def push(self, path: str, kind: str) -> None:
        """Hand an event to the loop. Called on the observer thread."""
        try:
            self._loop.call_soon_threadsafe(self._enqueue, path, kind)
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s event for %s", kind, path)

    def _request_rescan(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._on_overflow)
        except RuntimeError:
            logger.debug("Event loop closed, dropping rescan request")

    def _enqueue(self, path: str, kind: str) -> None:
        try:
            self._queue.put_nowait((path, kind))
        except asyncio.QueueFull:
            logger.warning("Watch queue full, dropping event for %s and rescanning", path)
            self._on_overflow()
