"""Persistent path -> record store backed by SQLite.

One writer connection is shared by all writing threads and serialized by a
re-entrant lock. Each reading thread gets its own connection so scans run
against a committed snapshot without waiting on the writer (WAL mode).
"""

from __future__ import annotations

import os
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import structlog

from filesense.errors import (
    InvalidInputError,
    NotFoundError,
    NotInitializedError,
    OpenError,
    StorageError,
)
from filesense.file_types import FileKind
from filesense.store.schema import migrate, read_version
from filesense.vectors import (
    as_vector,
    blob_to_vector,
    is_unit,
    vector_to_blob,
)

logger = structlog.get_logger(__name__)

DEFAULT_TEXT_DIMENSION = 384
SCAN_CHUNK_SIZE = 256

_RECORD_COLUMNS = (
    "id, path, name, file_type, byte_size, modified_at, indexed_at, "
    "embedding, content_hash"
)


@dataclass
class IndexedRecord:
    path: str
    display_name: str
    kind: FileKind
    byte_size: int
    modified_at: int
    indexed_at: int = 0
    embedding: np.ndarray | None = field(default=None, compare=False)
    content_hash: bytes | None = None
    id: int | None = field(default=None, compare=False)

    @classmethod
    def for_path(
        cls,
        path: str | Path,
        kind: FileKind,
        byte_size: int,
        modified_at: int,
        **kwargs,
    ) -> IndexedRecord:
        path = canonical_path(path)
        return cls(
            path=path,
            display_name=os.path.basename(path),
            kind=kind,
            byte_size=byte_size,
            modified_at=modified_at,
            **kwargs,
        )

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


def canonical_path(path: str | Path) -> str:
    return os.path.abspath(os.fspath(path))


def prefix_clause(column: str = "path") -> str:
    """SQL predicate matching ``column`` equal to or under a directory.

    Binds three parameters, see :func:`prefix_params`.
    """
    return f"({column} = ? OR substr({column}, 1, ?) = ?)"


def prefix_params(prefix: str | Path) -> tuple[str, int, str]:
    prefix = canonical_path(prefix)
    under = prefix if prefix.endswith(os.sep) else prefix + os.sep
    return (prefix, len(under), under)


def stored_width(conn: sqlite3.Connection, table: str) -> int | None:
    """Most common embedding width in ``table``, in float32 elements."""
    row = conn.execute(
        f"SELECT length(embedding) AS n FROM {table} "
        "WHERE embedding IS NOT NULL "
        "GROUP BY n ORDER BY COUNT(*) DESC LIMIT 1"
    ).fetchone()
    if row is None or not row[0] or row[0] % 4:
        return None
    return row[0] // 4


class RecordScan:
    """Restartable scan over stored records.

    Every iteration runs a fresh query, so each pass sees the store as of
    the moment it started.
    """

    def __init__(
        self,
        store: VectorStore,
        where: str,
        params: tuple,
    ) -> None:
        self._store = store
        self._where = where
        self._params = params

    def __iter__(self) -> Iterator[IndexedRecord]:
        conn = self._store.read_connection()
        sql = (
            f"SELECT {_RECORD_COLUMNS} FROM indexed_files "
            f"WHERE {self._where}"
        )
        try:
            cursor = conn.execute(sql, self._params)
            while rows := cursor.fetchmany(SCAN_CHUNK_SIZE):
                for row in rows:
                    record = self._store._row_to_record(row)
                    if record.embedding is not None:
                        yield record
        except sqlite3.Error as e:
            raise StorageError(f"scan failed: {e}") from e


class VectorStore:
    """Single-writer, multi-reader store of :class:`IndexedRecord`."""

    def __init__(
        self,
        db_path: str | Path,
        dimension: int = DEFAULT_TEXT_DIMENSION,
    ) -> None:
        if dimension <= 0:
            raise InvalidInputError(f"invalid dimension: {dimension}")
        self.db_path = Path(db_path)
        self.dimension = dimension

        self._write_lock = threading.RLock()
        self._writer_active = threading.Event()
        self._batch_depth = 0
        self._batch_owner: int | None = None

        self._local = threading.local()
        self._readers: dict[threading.Thread, sqlite3.Connection] = {}
        self._readers_lock = threading.Lock()
        self._closed = False

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect()
        except (OSError, sqlite3.Error) as e:
            raise OpenError(f"cannot open {self.db_path}: {e}") from e
        try:
            self._schema_version = migrate(self._conn)
        except sqlite3.Error as e:
            self._conn.close()
            raise OpenError(f"cannot open {self.db_path}: {e}") from e

        logger.debug(
            "opened vector store %s (schema v%d, dim=%d)",
            self.db_path,
            self._schema_version,
            dimension,
        )

    @classmethod
    def open(
        cls,
        db_path: str | Path,
        dimension: int | None = None,
    ) -> VectorStore:
        """Open ``db_path``.

        Without ``dimension`` the width of the stored embeddings is used,
        falling back to :data:`DEFAULT_TEXT_DIMENSION` for an empty index.
        """
        store = cls(db_path, dimension=dimension or DEFAULT_TEXT_DIMENSION)
        if dimension is None:
            try:
                stored = store.stored_dimension()
            except StorageError:
                store.close()
                raise
            if stored:
                store.dimension = stored
        return store

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            cached_statements=128,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def __enter__(self) -> VectorStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            with self._readers_lock:
                for conn in self._readers.values():
                    conn.close()
                self._readers.clear()
            self._conn.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise NotInitializedError("Database not initialized")

    def schema_version(self) -> int:
        with self._reading() as conn:
            return read_version(conn)

    # -- connections -------------------------------------------------------

    def get_raw_handle(self) -> sqlite3.Connection:
        """Return the writer connection for trusted in-process extensions.

        Callers must hold :attr:`write_lock` (or be inside :meth:`batch`)
        while using it.
        """
        self._check_open()
        return self._conn

    @property
    def write_lock(self) -> threading.RLock:
        return self._write_lock

    @property
    def writer_active(self) -> bool:
        return self._writer_active.is_set()

    def read_connection(self) -> sqlite3.Connection:
        """Connection for reads on the calling thread.

        Inside a batch on the writing thread this is the writer itself, so
        the thread sees its own uncommitted writes.
        """
        self._check_open()
        if self._batch_owner == threading.get_ident():
            return self._conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._prune_readers()
                self._readers[threading.current_thread()] = conn
        return conn

    def _prune_readers(self) -> None:
        # a finished thread can never use its connection again
        for thread in [t for t in self._readers if not t.is_alive()]:
            self._readers.pop(thread).close()

    def release_thread_connection(self) -> None:
        """Close the calling thread's reader connection, if it has one.

        Worker threads call this before exiting. Later reads on the same
        thread open a new connection.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._readers_lock:
            self._readers.pop(threading.current_thread(), None)
        conn.close()

    @property
    def reader_count(self) -> int:
        with self._readers_lock:
            return len(self._readers)

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        conn = self.read_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e

    @contextmanager
    def batch(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one transaction.

        Nested calls join the outer transaction. Any exception rolls back
        everything written since the outermost ``batch()`` began.
        """
        with self._write_lock:
            self._check_open()
            if self._batch_depth:
                self._batch_depth += 1
                try:
                    yield self._conn
                finally:
                    self._batch_depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"cannot begin transaction: {e}") from e
            self._batch_depth = 1
            self._batch_owner = threading.get_ident()
            self._writer_active.set()
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(f"write failed: {e}") from e
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise StorageError(f"commit failed: {e}") from e
            finally:
                self._batch_depth = 0
                self._batch_owner = None
                self._writer_active.clear()

    def _rollback(self) -> None:
        # sqlite may already have rolled back on its own (e.g. disk full)
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    # -- records -----------------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> IndexedRecord:
        try:
            kind = FileKind(row["file_type"])
        except ValueError:
            kind = FileKind.UNKNOWN
        content_hash = row["content_hash"]
        return IndexedRecord(
            id=row["id"],
            path=row["path"],
            display_name=row["name"],
            kind=kind,
            byte_size=row["byte_size"],
            modified_at=row["modified_at"],
            indexed_at=row["indexed_at"],
            embedding=blob_to_vector(row["embedding"], self.dimension),
            content_hash=bytes(content_hash) if content_hash else None,
        )

    def _validate_embedding(self, vec) -> np.ndarray:
        try:
            vec = as_vector(vec)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e
        if vec.shape[0] != self.dimension:
            raise InvalidInputError(
                f"Invalid embedding: expected dimension {self.dimension}, "
                f"got {vec.shape[0]}"
            )
        if not is_unit(vec):
            raise InvalidInputError("Invalid embedding: not unit length")
        return vec

    def upsert(self, record: IndexedRecord) -> None:
        """Insert or replace the record stored under ``record.path``."""
        blob = None
        if record.embedding is not None:
            blob = vector_to_blob(self._validate_embedding(record.embedding))
        path = canonical_path(record.path)
        indexed_at = record.indexed_at or int(time.time())

        with self.batch() as conn:
            conn.execute(
                """
                INSERT INTO indexed_files (
                    path, name, file_type, byte_size, modified_at,
                    indexed_at, embedding, content_hash
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    name = excluded.name,
                    file_type = excluded.file_type,
                    byte_size = excluded.byte_size,
                    modified_at = excluded.modified_at,
                    indexed_at = excluded.indexed_at,
                    embedding = excluded.embedding,
                    content_hash = excluded.content_hash
                """,
                (
                    path,
                    record.display_name or os.path.basename(path),
                    int(record.kind),
                    int(record.byte_size),
                    int(record.modified_at),
                    indexed_at,
                    blob,
                    record.content_hash,
                ),
            )

    def update_embedding(self, path: str | Path, vec: np.ndarray) -> None:
        blob = vector_to_blob(self._validate_embedding(vec))
        with self.batch() as conn:
            cursor = conn.execute(
                "UPDATE indexed_files SET embedding = ?, indexed_at = ? "
                "WHERE path = ?",
                (blob, int(time.time()), canonical_path(path)),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"File not found: {path}")

    def delete(self, path: str | Path) -> bool:
        with self.batch() as conn:
            cursor = conn.execute(
                "DELETE FROM indexed_files WHERE path = ?",
                (canonical_path(path),),
            )
            return cursor.rowcount > 0

    def delete_under(self, prefix: str | Path) -> int:
        """Delete ``prefix`` and everything beneath it; returns the count."""
        with self.batch() as conn:
            cursor = conn.execute(
                f"DELETE FROM indexed_files WHERE {prefix_clause()}",
                prefix_params(prefix),
            )
            return cursor.rowcount

    def clear(self) -> None:
        with self.batch() as conn:
            conn.execute("DELETE FROM indexed_files")

    def get(self, path: str | Path) -> IndexedRecord:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM indexed_files WHERE path = ?",
                (canonical_path(path),),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"File not found: {path}")
        return self._row_to_record(row)

    def contains(self, path: str | Path) -> bool:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM indexed_files WHERE path = ?",
                (canonical_path(path),),
            ).fetchone()
        return row is not None

    def is_fresh(self, path: str | Path, modified_at: int) -> bool:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM indexed_files "
                "WHERE path = ? AND modified_at >= ?",
                (canonical_path(path), int(modified_at)),
            ).fetchone()
        return row is not None

    def has_embedding(self, path: str | Path) -> bool:
        """True if ``path`` has a well-formed embedding stored."""
        with self._reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM indexed_files "
                "WHERE path = ? AND length(embedding) = ?",
                (canonical_path(path), self.dimension * 4),
            ).fetchone()
        return row is not None

    def iter_embedded(self) -> RecordScan:
        return RecordScan(
            self,
            "embedding IS NOT NULL AND length(embedding) = ?",
            (self.dimension * 4,),
        )

    def iter_under(self, prefix: str | Path) -> RecordScan:
        return RecordScan(
            self,
            f"embedding IS NOT NULL AND length(embedding) = ? "
            f"AND {prefix_clause()}",
            (self.dimension * 4, *prefix_params(prefix)),
        )

    def find_by_content_hash(self, content_hash: bytes) -> list[IndexedRecord]:
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM indexed_files "
                "WHERE content_hash = ? ORDER BY path",
                (content_hash,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT COUNT(*) FROM indexed_files").fetchone()
        return int(row[0])

    def count_embedded(self) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM indexed_files "
                "WHERE length(embedding) = ?",
                (self.dimension * 4,),
            ).fetchone()
        return int(row[0])

    def stored_dimension(self) -> int | None:
        with self._reading() as conn:
            return stored_width(conn, "indexed_files")

    def total_bytes(self) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(byte_size), 0) FROM indexed_files"
            ).fetchone()
        return int(row[0])
