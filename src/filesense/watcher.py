"""Filesystem change notifications for watched directory trees.

Raw watchdog events are collected from the observer threads and handed to
the callback in batches by a single delivery thread, so the callback is
never invoked concurrently with itself.
"""

from __future__ import annotations

import itertools
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntFlag
from pathlib import Path

import structlog
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from filesense.errors import InvalidInputError

logger = structlog.get_logger(__name__)

DEFAULT_LATENCY = 0.5
MIN_LATENCY = 0.01


class EventType(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    DIR_CREATED = "dir_created"
    DIR_DELETED = "dir_deleted"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class EventFlag(IntFlag):
    NONE = 0
    IS_DIR = 1
    IS_FILE = 2
    IS_SYMLINK = 4
    ITEM_RENAMED = 8
    ITEM_REMOVED = 16


@dataclass(frozen=True)
class WatchEvent:
    path: str
    type: EventType
    flags: EventFlag = EventFlag.NONE
    event_id: int = 0

    @property
    def is_dir(self) -> bool:
        return bool(self.flags & EventFlag.IS_DIR)

    @property
    def is_file(self) -> bool:
        return bool(self.flags & EventFlag.IS_FILE)

    @property
    def is_symlink(self) -> bool:
        return bool(self.flags & EventFlag.IS_SYMLINK)


WatchCallback = Callable[[list[WatchEvent]], None]
RawEvent = tuple[str, EventType, EventFlag]


def _item_flags(path: str, is_directory: bool) -> EventFlag:
    flags = EventFlag.IS_DIR if is_directory else EventFlag.IS_FILE
    # lstat only; symlinks are reported, never followed
    if os.path.islink(path):
        flags |= EventFlag.IS_SYMLINK
    return flags


def translate_event(event: FileSystemEvent) -> list[RawEvent]:
    """Map one watchdog event to (path, type, flags) triples.

    A move becomes a rename on each side; directory "modified" events
    (a child changed) are dropped since the child reports itself.
    """
    src = os.fsdecode(event.src_path)
    is_dir = event.is_directory

    if event.event_type == EVENT_TYPE_CREATED:
        kind = EventType.DIR_CREATED if is_dir else EventType.CREATED
        return [(src, kind, _item_flags(src, is_dir))]

    if event.event_type == EVENT_TYPE_MODIFIED:
        if is_dir:
            return []
        return [(src, EventType.MODIFIED, _item_flags(src, is_dir))]

    if event.event_type == EVENT_TYPE_DELETED:
        kind = EventType.DIR_DELETED if is_dir else EventType.DELETED
        base = EventFlag.IS_DIR if is_dir else EventFlag.IS_FILE
        return [(src, kind, base | EventFlag.ITEM_REMOVED)]

    if event.event_type == EVENT_TYPE_MOVED:
        dest = os.fsdecode(getattr(event, "dest_path", "") or "")
        base = EventFlag.IS_DIR if is_dir else EventFlag.IS_FILE
        out = [(src, EventType.RENAMED, base | EventFlag.ITEM_RENAMED)]
        if dest:
            out.append(
                (
                    dest,
                    EventType.RENAMED,
                    _item_flags(dest, is_dir) | EventFlag.ITEM_RENAMED,
                )
            )
        return out

    # opened/closed notifications carry no change
    if event.event_type in ("opened", "closed", "closed_no_write"):
        return []
    return [(src, EventType.UNKNOWN, _item_flags(src, is_dir))]


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: FileWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        for path, kind, flags in translate_event(event):
            self._watcher._push(path, kind, flags)


class FileWatcher:
    """Batched change notifications for a set of directory trees."""

    def __init__(self, latency: float = DEFAULT_LATENCY) -> None:
        self._paths: list[str] = []
        self._callback: WatchCallback | None = None
        self._latency = max(latency, MIN_LATENCY)

        self._lock = threading.Lock()
        self._pending: list[WatchEvent] = []
        self._ids = itertools.count(1)

        self._observer: Observer | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._running = False

    @property
    def paths(self) -> list[str]:
        return list(self._paths)

    def _require_stopped(self) -> None:
        if self._running:
            raise InvalidInputError(
                "watched paths can only change while the watcher is stopped"
            )

    def add_path(self, path: str | Path) -> None:
        self._require_stopped()
        path = os.path.abspath(os.fspath(path))
        if path not in self._paths:
            self._paths.append(path)

    def remove_path(self, path: str | Path) -> bool:
        self._require_stopped()
        path = os.path.abspath(os.fspath(path))
        if path in self._paths:
            self._paths.remove(path)
            return True
        return False

    def set_callback(self, callback: WatchCallback | None) -> None:
        self._callback = callback

    def set_batch_latency(self, seconds: float) -> None:
        self._latency = max(seconds, MIN_LATENCY)

    @property
    def latency(self) -> float:
        return self._latency

    def is_running(self) -> bool:
        return self._running

    def _push(self, path: str, kind: EventType, flags: EventFlag) -> None:
        with self._lock:
            self._pending.append(
                WatchEvent(
                    path=path,
                    type=kind,
                    flags=flags,
                    event_id=next(self._ids),
                )
            )

    def start(self) -> bool:
        """Begin watching; returns False if nothing could be watched."""
        if self._running:
            return True
        if not self._paths:
            logger.warning("watcher has no paths to watch")
            return False

        observer = Observer()
        observer.daemon = True
        observer.start()

        handler = _Handler(self)
        scheduled = 0
        for path in self._paths:
            try:
                observer.schedule(handler, path, recursive=True)
                scheduled += 1
            except OSError as e:
                # unreadable or vanished roots are skipped
                logger.warning("cannot watch %s: %s", path, e)

        if not scheduled:
            observer.stop()
            observer.join()
            return False

        self._observer = observer
        self._stop_event.clear()
        with self._lock:
            self._pending.clear()
        self._thread = threading.Thread(
            target=self._deliver_loop,
            name="filesense-watcher",
            daemon=True,
        )
        self._running = True
        self._thread.start()
        logger.info("watching %d path(s)", scheduled)
        return True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        with self._lock:
            self._pending.clear()
        logger.debug("watcher stopped")

    def _drain(self) -> list[WatchEvent]:
        with self._lock:
            batch, self._pending = self._pending, []
        return batch

    def _deliver_loop(self) -> None:
        while not self._stop_event.wait(self._latency):
            batch = self._drain()
            if not batch or self._callback is None:
                continue
            try:
                self._callback(batch)
            except Exception:
                logger.exception("watch callback failed")
