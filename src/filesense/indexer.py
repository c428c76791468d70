"""Background indexer keeping the store in sync with watched directories.

A single worker thread crawls the watched roots, embeds files whose stored
record is missing or older than the file, and writes results in batches.
With watching enabled it then follows filesystem events until stopped.

States::

    STOPPED -> RUNNING <-> PAUSED -> WATCHING | STOPPED
    (ERROR reachable from any running state)
"""

from __future__ import annotations

import hashlib
import os
import queue
import stat
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

import numpy as np
import structlog

from filesense.embeddings import (
    DEFAULT_MAX_CHARS,
    TextProvider,
    VisualProvider,
)
from filesense.errors import (
    EmbeddingError,
    InvalidInputError,
    NotInitializedError,
    StorageError,
)
from filesense.file_types import (
    DEFAULT_EXCLUDE_PATTERNS,
    EMBEDDABLE_KINDS,
    FileKind,
    is_excluded,
    is_visual_image,
    kind_for_path,
)
from filesense.store import (
    ImageRecord,
    ImageStore,
    IndexedRecord,
    VectorStore,
    canonical_path,
)
from filesense.watcher import EventType, FileWatcher, WatchEvent

logger = structlog.get_logger(__name__)

MAX_WATCH_DIRS = 32
MAX_EXCLUDE_PATTERNS = 64

# characters of file content handed to the text model
EMBED_MAX_CHARS = DEFAULT_MAX_CHARS
HASH_CHUNK_SIZE = 8192
# utf-8 needs at most 4 bytes per character
_TEXT_HEAD_BYTES = EMBED_MAX_CHARS * 4

_QUEUE_POLL_SECONDS = 0.25


class IndexerStatus(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    WATCHING = "watching"
    ERROR = "error"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass
class IndexerConfig:
    watch_dirs: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )
    index_hidden_files: bool = False
    recursive: bool = True
    # 0 disables the cap
    max_file_size_mb: int = 10
    batch_size: int = 32
    delay_between_batches_ms: int = 10
    enable_watching: bool = False
    watch_latency: float = 0.5

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


@dataclass
class IndexerStats:
    files_indexed: int = 0
    files_pending: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    total_bytes: int = 0
    progress: float = 1.0
    elapsed_time_sec: float = 0.0
    avg_time_per_file_ms: float = 0.0
    current_path: str = ""


@dataclass
class _Task:
    path: str
    kind: FileKind
    size: int
    modified_at: int


@dataclass(frozen=True)
class _Reindex:
    path: str
    directory: bool


StatusCallback = Callable[[str, IndexerStatus], None]
ProgressCallback = Callable[[IndexerStats], None]


class Indexer:
    """Crawls watched directories and keeps a :class:`VectorStore` fresh."""

    def __init__(
        self,
        config: IndexerConfig | None = None,
        store: VectorStore | None = None,
        provider: TextProvider | None = None,
        visual_provider: VisualProvider | None = None,
        image_store: ImageStore | None = None,
    ) -> None:
        config = config or IndexerConfig()
        self._config = replace(
            config,
            watch_dirs=[],
            exclude_patterns=[],
        )
        for path in config.watch_dirs:
            self.add_watch_dir(path)
        for pattern in config.exclude_patterns:
            self.add_exclude_pattern(pattern)

        self._store = store
        self._provider = provider
        self._visual_provider = visual_provider
        self._image_store = image_store

        self._lock = threading.Lock()
        self._status = IndexerStatus.STOPPED
        self._paused_from = IndexerStatus.RUNNING
        self._error_message = ""
        self._watching = config.enable_watching

        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._thread: threading.Thread | None = None
        self._requests: queue.Queue[list[WatchEvent] | _Reindex] = (
            queue.Queue()
        )
        self._watcher: FileWatcher | None = None

        self._stats = IndexerStats()
        self._started_at = 0.0
        self._finished_at = 0.0
        self._work_seconds = 0.0

        self.status_callback: StatusCallback | None = None
        self.progress_callback: ProgressCallback | None = None

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> IndexerConfig:
        return self._config

    def set_store(self, store: VectorStore | None) -> None:
        self._store = store

    def set_provider(self, provider: TextProvider | None) -> None:
        self._provider = provider

    def set_visual_provider(self, provider: VisualProvider | None) -> None:
        self._visual_provider = provider

    def set_image_store(self, image_store: ImageStore | None) -> None:
        self._image_store = image_store

    def add_watch_dir(self, path: str | Path) -> None:
        path = canonical_path(path)
        if path in self._config.watch_dirs:
            return
        if len(self._config.watch_dirs) >= MAX_WATCH_DIRS:
            raise InvalidInputError(
                f"too many watch directories (max {MAX_WATCH_DIRS})"
            )
        self._config.watch_dirs.append(path)

    def remove_watch_dir(self, path: str | Path) -> bool:
        path = canonical_path(path)
        if path in self._config.watch_dirs:
            self._config.watch_dirs.remove(path)
            return True
        return False

    def add_exclude_pattern(self, pattern: str) -> None:
        if not pattern:
            raise InvalidInputError("empty exclude pattern")
        if pattern in self._config.exclude_patterns:
            return
        if len(self._config.exclude_patterns) >= MAX_EXCLUDE_PATTERNS:
            raise InvalidInputError(
                f"too many exclude patterns (max {MAX_EXCLUDE_PATTERNS})"
            )
        self._config.exclude_patterns.append(pattern)

    def enable_watching(self, enabled: bool) -> None:
        """Follow filesystem events after the crawl instead of stopping.

        Disabling while in WATCHING lets the worker finish and stop.
        """
        self._watching = enabled
        self._config.enable_watching = enabled

    # -- state -------------------------------------------------------------

    @property
    def status(self) -> IndexerStatus:
        return self._status

    @property
    def error_message(self) -> str:
        return self._error_message

    def is_busy(self) -> bool:
        thread = self._thread
        return (
            thread is not None
            and thread.is_alive()
            and self._status
            in (
                IndexerStatus.RUNNING,
                IndexerStatus.PAUSED,
                IndexerStatus.WATCHING,
            )
        )

    def stats(self) -> IndexerStats:
        with self._lock:
            snapshot = replace(self._stats)
            started, finished = self._started_at, self._finished_at
            work = self._work_seconds
        if started:
            end = finished or time.perf_counter()
            snapshot.elapsed_time_sec = end - started
        total = snapshot.files_indexed + snapshot.files_pending
        snapshot.progress = snapshot.files_indexed / total if total else 1.0
        if snapshot.files_indexed:
            snapshot.avg_time_per_file_ms = (
                work * 1000.0 / snapshot.files_indexed
            )
        return snapshot

    def _set_status(self, status: IndexerStatus, message: str = "") -> None:
        with self._lock:
            if status is IndexerStatus.ERROR:
                self._error_message = message
            if (
                self._status is IndexerStatus.PAUSED
                and status is IndexerStatus.WATCHING
            ):
                # resume() will land in the new state
                self._paused_from = status
                return
            if self._status in (
                IndexerStatus.STOPPED,
                IndexerStatus.ERROR,
            ) and status in (IndexerStatus.RUNNING, IndexerStatus.WATCHING):
                # a concurrent stop() or failure wins
                return
            self._status = status
        self._emit_status("", status)

    def _emit_status(self, path: str, status: IndexerStatus) -> None:
        callback = self.status_callback
        if callback is None:
            return
        try:
            callback(path, status)
        except Exception:
            logger.exception("status callback failed")

    def _emit_progress(self) -> None:
        callback = self.progress_callback
        if callback is None:
            return
        try:
            callback(self.stats())
        except Exception:
            logger.exception("progress callback failed")

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> bool:
        """Start the worker; returns False if it is already running."""
        if self.is_busy():
            return False
        if self._store is None:
            raise NotInitializedError("No vector database set")
        if not self._config.watch_dirs:
            raise InvalidInputError("no watch directories configured")

        # a previous worker may still be unwinding after stop()
        if self._thread is not None:
            self._thread.join()

        self._stop_event.clear()
        self._resume_event.set()
        with self._lock:
            self._stats = IndexerStats()
            self._started_at = time.perf_counter()
            self._finished_at = 0.0
            self._work_seconds = 0.0
            self._error_message = ""
            self._status = IndexerStatus.RUNNING

        # emitted before the worker exists so STOPPED can never precede it
        self._emit_status("", IndexerStatus.RUNNING)
        self._thread = threading.Thread(
            target=self._run,
            name="filesense-indexer",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "indexer started on %d root(s)", len(self._config.watch_dirs)
        )
        return True

    def pause(self) -> bool:
        with self._lock:
            if self._status not in (
                IndexerStatus.RUNNING,
                IndexerStatus.WATCHING,
            ):
                return False
            self._paused_from = self._status
            self._status = IndexerStatus.PAUSED
            self._resume_event.clear()
        self._emit_status("", IndexerStatus.PAUSED)
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._status is not IndexerStatus.PAUSED:
                return False
            self._status = self._paused_from
            self._resume_event.set()
            status = self._status
        self._emit_status("", status)
        return True

    def stop(self) -> None:
        """Ask the worker to stop; returns without waiting for it.

        Use :meth:`wait` to join the worker for a deterministic teardown.
        """
        self._stop_event.set()
        self._resume_event.set()
        with self._lock:
            if self._status is IndexerStatus.STOPPED:
                return
            if self._status is not IndexerStatus.ERROR:
                self._status = IndexerStatus.STOPPED
        self._emit_status("", IndexerStatus.STOPPED)

    def wait(self, timeout: float | None = None) -> bool:
        """Join the worker; returns True once it has exited."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _checkpoint(self) -> bool:
        """Block while paused; False once a stop has been requested."""
        self._resume_event.wait()
        return not self._stop_event.is_set()

    # -- forced reindex ----------------------------------------------------

    def reindex_file(self, path: str | Path) -> None:
        request = _Reindex(canonical_path(path), directory=False)
        if self.is_busy():
            self._requests.put(request)
        else:
            self._run_inline(request)

    def reindex_directory(self, path: str | Path) -> None:
        request = _Reindex(canonical_path(path), directory=True)
        if self.is_busy():
            self._requests.put(request)
        else:
            self._run_inline(request)

    def _run_inline(self, request: _Reindex) -> None:
        if self._store is None:
            raise NotInitializedError("No vector database set")
        # a stopped worker may still be unwinding; it must observe the stop
        # before the shared events are reset
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._stop_event.clear()
        self._resume_event.set()
        batch: list[_Task] = []
        self._handle_reindex(request, batch)
        self._flush(batch)

    def _handle_reindex(self, request: _Reindex, batch: list[_Task]) -> None:
        store = self._require_store()
        root = self._root_for(request.path) or os.path.dirname(request.path)
        if request.directory:
            removed = store.delete_under(request.path)
            if self._image_store is not None:
                self._image_store.delete_under(request.path)
            logger.info(
                "reindexing %s (%d records dropped)", request.path, removed
            )
            self._crawl([(request.path, root)])
        else:
            store.delete(request.path)
            if self._image_store is not None:
                self._image_store.delete(request.path)
            self._consider_file(request.path, root, batch)

    # -- eligibility -------------------------------------------------------

    def _require_store(self) -> VectorStore:
        if self._store is None:
            raise NotInitializedError("No vector database set")
        return self._store

    def _root_for(self, path: str) -> str | None:
        best = None
        for root in self._config.watch_dirs:
            under = root if root.endswith(os.sep) else root + os.sep
            if path == root or path.startswith(under):
                if best is None or len(root) > len(best):
                    best = root
        return best

    def _excluded(self, path: str, root: str | None) -> bool:
        return is_excluded(
            path,
            self._config.exclude_patterns,
            root=root,
            include_hidden=self._config.index_hidden_files,
        )

    def should_index_file(self, path: str | Path) -> bool:
        """Whether ``path`` is an eligible file, ignoring freshness."""
        path = canonical_path(path)
        if self._excluded(path, self._root_for(path)):
            return False
        try:
            st = os.lstat(path)
        except OSError:
            return False
        return self._eligible(path, st)

    def _eligible(self, path: str, st: os.stat_result) -> bool:
        if not stat.S_ISREG(st.st_mode):
            return False
        limit = self._config.max_file_size_bytes
        if limit and st.st_size > limit:
            return False
        return kind_for_path(path) is not FileKind.UNKNOWN

    def _wants_text(self, kind: FileKind) -> bool:
        provider = self._provider
        return (
            kind in EMBEDDABLE_KINDS
            and provider is not None
            and provider.is_loaded()
        )

    def _wants_image(self, path: str, kind: FileKind) -> bool:
        provider = self._visual_provider
        return (
            kind is FileKind.IMAGE
            and self._image_store is not None
            and provider is not None
            and provider.is_loaded()
            and is_visual_image(path)
        )

    def _needs_work(self, path: str, kind: FileKind, mtime: int) -> bool:
        store = self._require_store()
        if not store.is_fresh(path, mtime):
            return True
        # fresh record whose embedding is missing or malformed
        if self._wants_text(kind) and not store.has_embedding(path):
            return True
        if self._wants_image(path, kind):
            assert self._image_store is not None
            return not self._image_store.is_fresh(path, mtime)
        return False

    def _make_task(self, path: str, st: os.stat_result) -> _Task | None:
        if not self._eligible(path, st):
            self._count_skipped()
            return None
        kind = kind_for_path(path)
        mtime = int(st.st_mtime)
        if not self._needs_work(path, kind, mtime):
            self._count_skipped()
            return None
        return _Task(
            path=path,
            kind=kind,
            size=st.st_size,
            modified_at=mtime,
        )

    def _count_skipped(self, failed: bool = False) -> None:
        with self._lock:
            self._stats.files_skipped += 1
            if failed:
                self._stats.files_failed += 1

    def _set_pending(self, count: int) -> None:
        with self._lock:
            self._stats.files_pending = count

    # -- worker ------------------------------------------------------------

    def _run(self) -> None:
        roots = [(root, root) for root in self._config.watch_dirs]
        try:
            completed = self._crawl(roots)
            if completed:
                self._drain_requests()
            if completed and self._watching and self._checkpoint():
                self._set_status(IndexerStatus.WATCHING)
                self._watch_loop()
        except StorageError as e:
            logger.error("indexer stopped on store failure: %s", e)
            self._set_status(IndexerStatus.ERROR, str(e))
        finally:
            if self._watcher is not None:
                self._watcher.stop()
                self._watcher = None
            if self._store is not None:
                self._store.release_thread_connection()
            with self._lock:
                self._finished_at = time.perf_counter()
                self._stats.files_pending = 0
                stopped = self._status is not IndexerStatus.ERROR
                if stopped:
                    self._status = IndexerStatus.STOPPED
            if stopped:
                self._emit_status("", IndexerStatus.STOPPED)
            stats = self.stats()
            logger.info(
                "indexer finished: %d indexed, %d skipped in %.1fs",
                stats.files_indexed,
                stats.files_skipped,
                stats.elapsed_time_sec,
            )

    def _crawl(self, roots: list[tuple[str, str]]) -> bool:
        """Walk ``(directory, root)`` pairs; False if stopped midway."""
        stack = list(reversed(roots))
        batch: list[_Task] = []

        while stack:
            if not self._checkpoint():
                self._set_pending(0)
                return False
            directory, root = stack.pop()
            try:
                entries = os.scandir(directory)
            except OSError as e:
                logger.warning("cannot open directory %s: %s", directory, e)
                continue

            subdirs: list[tuple[str, str]] = []
            with entries:
                for entry in entries:
                    self._visit(entry, root, subdirs, batch)
                    if len(batch) >= self._config.batch_size:
                        if not self._flush(batch):
                            return False
                        batch = []
            # keep directory order stable for the next pops
            stack.extend(reversed(subdirs))

        return self._flush(batch)

    def _visit(
        self,
        entry: os.DirEntry,
        root: str,
        subdirs: list[tuple[str, str]],
        batch: list[_Task],
    ) -> None:
        path = entry.path
        if self._excluded(path, root):
            self._count_skipped()
            return
        try:
            if entry.is_symlink():
                return
            if entry.is_dir(follow_symlinks=False):
                if self._config.recursive:
                    subdirs.append((path, root))
                return
            st = entry.stat(follow_symlinks=False)
        except OSError as e:
            logger.debug("cannot stat %s: %s", path, e)
            self._count_skipped(failed=True)
            return

        task = self._make_task(path, st)
        if task is not None:
            batch.append(task)
            self._set_pending(len(batch))

    def _consider_file(
        self,
        path: str,
        root: str | None,
        batch: list[_Task],
    ) -> None:
        if self._excluded(path, root):
            return
        if any(task.path == path for task in batch):
            return
        try:
            st = os.lstat(path)
        except OSError:
            return
        task = self._make_task(path, st)
        if task is not None:
            batch.append(task)
            self._set_pending(len(batch))

    def _read_file(
        self, task: _Task, want_text: bool
    ) -> tuple[bytes, str | None]:
        digest = hashlib.md5(usedforsecurity=False)
        head = bytearray()
        with open(task.path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
                if want_text and len(head) < _TEXT_HEAD_BYTES:
                    head.extend(chunk)
        if not want_text:
            return digest.digest(), None
        text = bytes(head[:_TEXT_HEAD_BYTES]).decode("utf-8", errors="replace")
        return digest.digest(), text[:EMBED_MAX_CHARS]

    def _encode_texts(self, texts: list[str]) -> list[np.ndarray | None]:
        provider = self._provider
        if not texts or provider is None:
            return []
        try:
            return list(provider.encode_batch(texts))
        except (EmbeddingError, InvalidInputError, NotInitializedError) as e:
            logger.warning("batch encode failed, retrying singly: %s", e)

        vectors: list[np.ndarray | None] = []
        for text in texts:
            if self._stop_event.is_set():
                break
            try:
                vectors.append(provider.encode_text(text))
            except (
                EmbeddingError,
                InvalidInputError,
                NotInitializedError,
            ) as e:
                logger.debug("encode failed: %s", e)
                vectors.append(None)
        return vectors

    def _encode_images(self, tasks: list[_Task]) -> list[ImageRecord]:
        provider = self._visual_provider
        records: list[ImageRecord] = []
        for task in tasks:
            if not self._wants_image(task.path, task.kind):
                continue
            assert self._image_store is not None and provider is not None
            if self._image_store.is_fresh(task.path, task.modified_at):
                continue
            if not self._checkpoint():
                return records
            try:
                result = provider.encode_image(task.path)
            except (OSError, EmbeddingError, InvalidInputError) as e:
                logger.debug("image encode failed for %s: %s", task.path, e)
                continue
            records.append(
                ImageRecord(
                    path=task.path,
                    display_name=os.path.basename(task.path),
                    width=result.width,
                    height=result.height,
                    byte_size=task.size,
                    modified_at=task.modified_at,
                    embedding=result.vector,
                )
            )
        return records

    def _flush(self, batch: list[_Task]) -> bool:
        """Encode and write one batch; False if a stop was observed."""
        if not batch:
            return self._checkpoint()
        store = self._require_store()
        started = time.perf_counter()

        records: list[IndexedRecord] = []
        texts: list[str] = []
        text_slots: list[int] = []
        for task in batch:
            # checked before every encode-bound read
            if not self._checkpoint():
                self._set_pending(0)
                return False
            want_text = self._wants_text(task.kind)
            try:
                content_hash, text = self._read_file(task, want_text)
            except OSError as e:
                logger.debug("cannot read %s: %s", task.path, e)
                self._count_skipped(failed=True)
                continue
            records.append(
                IndexedRecord.for_path(
                    task.path,
                    task.kind,
                    task.size,
                    task.modified_at,
                    content_hash=content_hash,
                )
            )
            if text is not None:
                text_slots.append(len(records) - 1)
                texts.append(text)

        vectors = self._encode_texts(texts)
        images = self._encode_images(batch)
        if self._stop_event.is_set():
            # in-flight results are discarded
            self._set_pending(0)
            return False

        failed: set[int] = set()
        for slot, vec in zip(text_slots, vectors):
            if vec is None or vec.shape[0] != store.dimension:
                failed.add(slot)
            else:
                records[slot].embedding = vec
        failed.update(text_slots[len(vectors) :])

        now = int(time.time())
        written = [r for i, r in enumerate(records) if i not in failed]
        for record in written:
            record.indexed_at = max(now, record.modified_at)

        with store.batch():
            for record in written:
                store.upsert(record)
            if self._image_store is not None:
                for image in images:
                    self._image_store.upsert(image)

        elapsed = time.perf_counter() - started
        with self._lock:
            self._stats.files_indexed += len(written)
            self._stats.files_skipped += len(failed)
            self._stats.files_failed += len(failed)
            self._stats.total_bytes += sum(r.byte_size for r in written)
            self._stats.files_pending = 0
            if written:
                self._stats.current_path = written[-1].path
            self._work_seconds += elapsed

        logger.debug(
            "flushed %d records (%d failed) in %.1fms",
            len(written),
            len(failed),
            elapsed * 1000,
        )
        status = self._status
        for record in written:
            self._emit_status(record.path, status)
        self._emit_progress()

        delay = self._config.delay_between_batches_ms / 1000.0
        if delay > 0 and self._stop_event.wait(delay):
            return False
        return True

    # -- watching ----------------------------------------------------------

    def _drain_requests(self) -> None:
        batch: list[_Task] = []
        while self._checkpoint():
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            self._handle_item(item, batch)
        self._flush(batch)

    def _watch_loop(self) -> None:
        watcher = FileWatcher(latency=self._config.watch_latency)
        for root in self._config.watch_dirs:
            watcher.add_path(root)
        watcher.set_callback(self._requests.put)
        if not watcher.start():
            logger.warning("no watchable roots, leaving watch mode")
            return
        self._watcher = watcher

        batch: list[_Task] = []
        while self._watching and self._checkpoint():
            try:
                item = self._requests.get(timeout=_QUEUE_POLL_SECONDS)
            except queue.Empty:
                if batch:
                    if not self._flush(batch):
                        return
                    batch = []
                continue
            self._handle_item(item, batch)
            if len(batch) >= self._config.batch_size:
                if not self._flush(batch):
                    return
                batch = []

        if not self._stop_event.is_set():
            self._flush(batch)

    def _handle_item(
        self,
        item: list[WatchEvent] | _Reindex,
        batch: list[_Task],
    ) -> None:
        if isinstance(item, _Reindex):
            self._handle_reindex(item, batch)
            return
        for event in item:
            self._handle_event(event, batch)

    def _handle_event(self, event: WatchEvent, batch: list[_Task]) -> None:
        path = canonical_path(event.path)
        root = self._root_for(path)
        if root is None:
            return
        store = self._require_store()
        images = self._image_store
        kind = event.type

        if kind in (EventType.CREATED, EventType.MODIFIED):
            if not event.is_dir:
                self._consider_file(path, root, batch)
        elif kind is EventType.DELETED:
            store.delete(path)
            if images is not None:
                images.delete(path)
        elif kind is EventType.DIR_DELETED:
            store.delete_under(path)
            if images is not None:
                images.delete_under(path)
        elif kind is EventType.DIR_CREATED:
            if not self._excluded(path, root):
                self._crawl([(path, root)])
        else:
            # renames and unknown events: resync whatever is there now
            self._resync_path(path, root, batch)

    def _resync_path(self, path: str, root: str, batch: list[_Task]) -> None:
        store = self._require_store()
        images = self._image_store
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            store.delete(path)
            store.delete_under(path)
            if images is not None:
                images.delete(path)
                images.delete_under(path)
            return
        except OSError as e:
            logger.debug("cannot stat %s: %s", path, e)
            return
        if stat.S_ISDIR(st.st_mode):
            if not self._excluded(path, root):
                self._crawl([(path, root)])
        else:
            self._consider_file(path, root, batch)
