"""Tests for the filesystem watcher."""

import threading
import time
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from filesense.errors import InvalidInputError
from filesense.watcher import (
    EventFlag,
    EventType,
    FileWatcher,
    WatchEvent,
    translate_event,
)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class TestTranslateEvent:
    def test_file_created(self):
        [(path, kind, flags)] = translate_event(FileCreatedEvent("/x/a.txt"))
        assert path == "/x/a.txt"
        assert kind is EventType.CREATED
        assert flags & EventFlag.IS_FILE

    def test_file_modified(self):
        [(_, kind, _)] = translate_event(FileModifiedEvent("/x/a.txt"))
        assert kind is EventType.MODIFIED

    def test_directory_modified_is_dropped(self):
        assert translate_event(DirModifiedEvent("/x")) == []

    def test_deletions(self):
        [(_, kind, flags)] = translate_event(FileDeletedEvent("/x/a.txt"))
        assert kind is EventType.DELETED
        assert flags & EventFlag.ITEM_REMOVED
        [(_, kind, flags)] = translate_event(DirDeletedEvent("/x/sub"))
        assert kind is EventType.DIR_DELETED
        assert flags & EventFlag.IS_DIR

    def test_dir_created(self):
        [(_, kind, flags)] = translate_event(DirCreatedEvent("/x/sub"))
        assert kind is EventType.DIR_CREATED
        assert flags & EventFlag.IS_DIR

    def test_move_reports_both_sides(self):
        out = translate_event(FileMovedEvent("/x/a.txt", "/x/b.txt"))
        assert [(p, k) for p, k, _ in out] == [
            ("/x/a.txt", EventType.RENAMED),
            ("/x/b.txt", EventType.RENAMED),
        ]
        assert all(f & EventFlag.ITEM_RENAMED for _, _, f in out)

    def test_close_is_ignored(self):
        assert translate_event(FileClosedEvent("/x/a.txt")) == []


class TestWatchEvent:
    def test_flag_properties(self):
        event = WatchEvent(
            "/a", EventType.CREATED, EventFlag.IS_FILE | EventFlag.IS_SYMLINK
        )
        assert event.is_file
        assert event.is_symlink
        assert not event.is_dir

    def test_labels(self):
        assert EventType.DIR_CREATED.label == "dir created"


class TestFileWatcher:
    @pytest.fixture
    def collected(self):
        events: list[WatchEvent] = []
        lock = threading.Lock()

        def callback(batch: list[WatchEvent]) -> None:
            with lock:
                events.extend(batch)

        def snapshot() -> list[WatchEvent]:
            with lock:
                return list(events)

        return callback, snapshot

    @pytest.fixture
    def watcher(self, tmp_path: Path, collected):
        callback, _ = collected
        w = FileWatcher(latency=0.05)
        w.add_path(tmp_path)
        w.set_callback(callback)
        yield w
        w.stop()

    def test_start_without_paths(self):
        assert not FileWatcher().start()

    def test_start_with_only_missing_paths(self, tmp_path: Path):
        w = FileWatcher()
        w.add_path(tmp_path / "does-not-exist")
        assert not w.start()
        assert not w.is_running()

    def test_paths_frozen_while_running(self, watcher, tmp_path: Path):
        assert watcher.start()
        with pytest.raises(InvalidInputError):
            watcher.add_path(tmp_path / "other")
        with pytest.raises(InvalidInputError):
            watcher.remove_path(tmp_path)

    def test_reports_created_file(self, watcher, collected, tmp_path: Path):
        _, snapshot = collected
        assert watcher.start()
        target = tmp_path / "new.txt"
        target.write_text("hello")
        assert wait_for(
            lambda: any(
                e.path == str(target)
                and e.type in (EventType.CREATED, EventType.MODIFIED)
                for e in snapshot()
            )
        )

    def test_reports_nested_changes(self, watcher, collected, tmp_path: Path):
        _, snapshot = collected
        sub = tmp_path / "sub"
        sub.mkdir()
        assert watcher.start()
        target = sub / "deep.txt"
        target.write_text("x")
        assert wait_for(lambda: any(e.path == str(target) for e in snapshot()))

    def test_reports_deletion(self, watcher, collected, tmp_path: Path):
        _, snapshot = collected
        target = tmp_path / "gone.txt"
        target.write_text("x")
        assert watcher.start()
        target.unlink()
        assert wait_for(
            lambda: any(
                e.path == str(target) and e.type is EventType.DELETED
                for e in snapshot()
            )
        )

    def test_event_ids_increase(self, watcher, collected, tmp_path: Path):
        _, snapshot = collected
        assert watcher.start()
        for i in range(3):
            (tmp_path / f"f{i}.txt").write_text(str(i))
        assert wait_for(lambda: len(snapshot()) >= 3)
        ids = [e.event_id for e in snapshot()]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_callback_errors_do_not_stop_delivery(self, tmp_path: Path):
        calls = []

        def callback(batch):
            calls.append(len(batch))
            raise RuntimeError("boom")

        w = FileWatcher(latency=0.05)
        w.add_path(tmp_path)
        w.set_callback(callback)
        assert w.start()
        try:
            (tmp_path / "a.txt").write_text("a")
            assert wait_for(lambda: len(calls) >= 1)
            (tmp_path / "b.txt").write_text("b")
            assert wait_for(lambda: len(calls) >= 2)
        finally:
            w.stop()

    def test_stop_is_idempotent(self, watcher):
        assert watcher.start()
        watcher.stop()
        watcher.stop()
        assert not watcher.is_running()
