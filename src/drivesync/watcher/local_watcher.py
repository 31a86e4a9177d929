"""Filesystem watcher producing debounced add/change/delete events."""

import asyncio
import os
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.local_scanner import IgnoreRules, to_relative
from ..core.operation_queue import OperationKind
from ..utils.logging import get_logger


EventCallback = Callable[[OperationKind, str], None]


class _ForwardingHandler(FileSystemEventHandler):
    """Runs on the observer thread and hands file events to the event loop."""

    def __init__(self, watcher: "LocalWatcher"):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_threadsafe(OperationKind.ADD, event.src_path)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_threadsafe(OperationKind.CHANGE, event.src_path)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_threadsafe(OperationKind.DELETE, event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.notify_threadsafe(OperationKind.DELETE, event.src_path)
            self.watcher.notify_threadsafe(OperationKind.ADD, event.dest_path)


class LocalWatcher:
    """Watches the local root and emits one event per path once it settles.

    Events for the same path within ``debounce_seconds`` collapse into one:
    the latest kind wins, except that an add followed by changes stays an
    add. Nothing is emitted while ``is_active()`` is false.
    """

    def __init__(
        self,
        root: Path,
        callback: EventCallback,
        is_active: Callable[[], bool],
        ignore_rules: Optional[IgnoreRules] = None,
        debounce_seconds: float = 2.0
    ):
        self.root = Path(root)
        self.callback = callback
        self.is_active = is_active
        self.ignore_rules = ignore_rules or IgnoreRules()
        self.debounce_seconds = debounce_seconds
        self.logger = get_logger(self.__class__.__name__)

        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, Tuple[OperationKind, asyncio.TimerHandle]] = {}

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self):
        if self._observer is not None:
            return

        self._loop = asyncio.get_event_loop()
        self._observer = Observer()
        self._observer.schedule(_ForwardingHandler(self), str(self.root), recursive=True)
        self._observer.start()
        self.logger.info("Watching local folder", root=str(self.root), debounce_seconds=self.debounce_seconds)

    def stop(self):
        for _, handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            self.logger.info("Stopped watching local folder", root=str(self.root))

    def notify_threadsafe(self, kind: OperationKind, src_path):
        """Entry point for the observer thread."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.notify, kind, os.fsdecode(src_path))

    def notify(self, kind: OperationKind, absolute_path: str):
        """Record a raw event on the loop thread and restart its debounce timer."""
        if not self.is_active():
            return

        relative = to_relative(self.root, Path(absolute_path))
        if relative.startswith("..") or self.ignore_rules.is_ignored(relative):
            return

        previous = self._pending.pop(relative, None)
        if previous is not None:
            previous_kind, handle = previous
            handle.cancel()
            if previous_kind is OperationKind.ADD and kind is OperationKind.CHANGE:
                kind = OperationKind.ADD

        handle = asyncio.get_event_loop().call_later(self.debounce_seconds, self._emit, relative)
        self._pending[relative] = (kind, handle)

    def _emit(self, relative: str):
        pending = self._pending.pop(relative, None)
        if pending is None or not self.is_active():
            return

        kind = pending[0]
        if kind is OperationKind.DELETE and (self.root / relative).exists():
            kind = OperationKind.CHANGE

        self.logger.debug("Local change detected", kind=kind.value, path=relative)
        try:
            self.callback(kind, relative)
        except Exception as e:
            self.logger.error("Local event callback failed", path=relative, error=str(e))
