"""Tests for the SQLite vector store and its migrations."""

import sqlite3
import threading
from pathlib import Path

import numpy as np
import pytest

from filesense.errors import (
    InvalidInputError,
    NotFoundError,
    NotInitializedError,
    OpenError,
    StorageError,
)
from filesense.file_types import FileKind
from filesense.store import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_TEXT_DIMENSION,
    MIGRATIONS,
    IndexedRecord,
    VectorStore,
)
from filesense.store.schema import migrate, read_version
from filesense.vectors import normalize

DIM = 8


def unit(*values: float) -> np.ndarray:
    vec = np.zeros(DIM, dtype=np.float32)
    vec[: len(values)] = values
    return normalize(vec)


def record(path: str, embedding=None, modified_at: int = 100, **kw):
    return IndexedRecord.for_path(
        path,
        kw.pop("kind", FileKind.TEXT),
        kw.pop("byte_size", 10),
        modified_at,
        embedding=embedding,
        **kw,
    )


class TestVectorStore:
    @pytest.fixture
    def store(self, tmp_path: Path):
        with VectorStore.open(tmp_path / "index.db", dimension=DIM) as s:
            yield s

    def test_fresh_database_is_current(self, store: VectorStore):
        assert store.schema_version() == CURRENT_SCHEMA_VERSION
        assert store.count() == 0

    def test_upsert_and_get(self, store: VectorStore):
        store.upsert(
            record("/data/a.txt", unit(1.0), content_hash=b"\x01" * 16)
        )
        got = store.get("/data/a.txt")
        assert got.display_name == "a.txt"
        assert got.kind is FileKind.TEXT
        assert got.modified_at == 100
        assert got.content_hash == b"\x01" * 16
        np.testing.assert_allclose(got.embedding, unit(1.0))

    def test_upsert_replaces_by_path(self, store: VectorStore):
        store.upsert(record("/data/a.txt", unit(1.0), modified_at=100))
        store.upsert(record("/data/a.txt", unit(0.0, 1.0), modified_at=200))
        assert store.count() == 1
        got = store.get("/data/a.txt")
        assert got.modified_at == 200
        np.testing.assert_allclose(got.embedding, unit(0.0, 1.0))

    def test_record_without_embedding(self, store: VectorStore):
        store.upsert(record("/data/photo.png", kind=FileKind.IMAGE))
        assert store.contains("/data/photo.png")
        assert not store.has_embedding("/data/photo.png")
        assert list(store.iter_embedded()) == []
        assert store.count_embedded() == 0

    def test_rejects_wrong_dimension(self, store: VectorStore):
        with pytest.raises(InvalidInputError, match="Invalid embedding"):
            store.upsert(record("/a.txt", normalize(np.ones(DIM + 1))))
        assert store.count() == 0

    def test_rejects_non_unit_vector(self, store: VectorStore):
        with pytest.raises(InvalidInputError, match="Invalid embedding"):
            store.upsert(record("/a.txt", np.ones(DIM, dtype=np.float32)))

    def test_get_missing(self, store: VectorStore):
        with pytest.raises(NotFoundError, match="File not found"):
            store.get("/nope.txt")

    def test_update_embedding(self, store: VectorStore):
        store.upsert(record("/a.txt"))
        store.update_embedding("/a.txt", unit(0.0, 0.0, 1.0))
        assert store.has_embedding("/a.txt")
        with pytest.raises(NotFoundError):
            store.update_embedding("/missing.txt", unit(1.0))

    def test_is_fresh(self, store: VectorStore):
        store.upsert(record("/a.txt", modified_at=500))
        assert store.is_fresh("/a.txt", 500)
        assert store.is_fresh("/a.txt", 400)
        assert not store.is_fresh("/a.txt", 501)
        assert not store.is_fresh("/b.txt", 1)

    def test_delete(self, store: VectorStore):
        store.upsert(record("/a.txt"))
        assert store.delete("/a.txt")
        assert not store.delete("/a.txt")
        assert store.count() == 0

    def test_delete_under_matches_whole_components(self, store: VectorStore):
        for path in ("/d/x.txt", "/d/sub/y.txt", "/dd/z.txt", "/d"):
            store.upsert(record(path, unit(1.0)))
        assert store.delete_under("/d") == 3
        assert [r.path for r in store.iter_embedded()] == ["/dd/z.txt"]

    def test_iter_under(self, store: VectorStore):
        store.upsert(record("/d/x.txt", unit(1.0)))
        store.upsert(record("/dd/y.txt", unit(1.0)))
        assert [r.path for r in store.iter_under("/d")] == ["/d/x.txt"]

    def test_scan_is_restartable(self, store: VectorStore):
        store.upsert(record("/a.txt", unit(1.0)))
        scan = store.iter_embedded()
        assert len(list(scan)) == 1
        store.upsert(record("/b.txt", unit(1.0)))
        assert len(list(scan)) == 2

    def test_find_by_content_hash(self, store: VectorStore):
        digest = b"\xab" * 16
        store.upsert(record("/b.txt", content_hash=digest))
        store.upsert(record("/a.txt", content_hash=digest))
        store.upsert(record("/c.txt", content_hash=b"\x00" * 16))
        paths = [r.path for r in store.find_by_content_hash(digest)]
        assert paths == ["/a.txt", "/b.txt"]

    def test_totals(self, store: VectorStore):
        store.upsert(record("/a.txt", unit(1.0), byte_size=100))
        store.upsert(record("/b.txt", byte_size=50))
        assert store.count() == 2
        assert store.count_embedded() == 1
        assert store.total_bytes() == 150

    def test_clear(self, store: VectorStore):
        store.upsert(record("/a.txt", unit(1.0)))
        store.clear()
        assert store.count() == 0

    def test_malformed_blob_reads_as_missing(self, store: VectorStore):
        store.upsert(record("/a.txt", unit(1.0)))
        with store.batch() as conn:
            conn.execute(
                "UPDATE indexed_files SET embedding = ? WHERE path = ?",
                (b"\x00" * 5, "/a.txt"),
            )
        assert store.get("/a.txt").embedding is None
        assert not store.has_embedding("/a.txt")
        assert list(store.iter_embedded()) == []

    def test_closed_store(self, tmp_path: Path):
        store = VectorStore(tmp_path / "x.db", dimension=DIM)
        store.close()
        assert store.closed
        with pytest.raises(NotInitializedError):
            store.count()


class TestBatch:
    @pytest.fixture
    def store(self, tmp_path: Path):
        with VectorStore.open(tmp_path / "index.db", dimension=DIM) as s:
            yield s

    def test_batch_commits_together(self, store: VectorStore):
        with store.batch():
            store.upsert(record("/a.txt"))
            store.upsert(record("/b.txt"))
            # the writing thread sees its own uncommitted rows
            assert store.count() == 2
        assert store.count() == 2

    def test_batch_rolls_back_on_error(self, store: VectorStore):
        with pytest.raises(RuntimeError):
            with store.batch():
                store.upsert(record("/a.txt"))
                raise RuntimeError("boom")
        assert store.count() == 0

    def test_sqlite_errors_become_storage_errors(self, store: VectorStore):
        with pytest.raises(StorageError):
            with store.batch() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")

    def test_readers_do_not_see_uncommitted_writes(self, store: VectorStore):
        seen: list[int] = []
        inside = threading.Event()
        release = threading.Event()

        def writer():
            with store.batch():
                store.upsert(record("/a.txt"))
                inside.set()
                release.wait(5)

        t = threading.Thread(target=writer)
        t.start()
        assert inside.wait(5)
        assert store.writer_active
        seen.append(store.count())
        release.set()
        t.join(5)
        seen.append(store.count())
        assert seen == [0, 1]

    def test_concurrent_writers(self, store: VectorStore):
        def write(prefix: str):
            for i in range(20):
                store.upsert(record(f"/{prefix}/{i}.txt", unit(1.0)))

        threads = [
            threading.Thread(target=write, args=(p,)) for p in ("a", "b", "c")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.count() == 60


class TestMigrations:
    def _v1_database(self, path: Path) -> None:
        conn = sqlite3.connect(path, isolation_level=None)
        migrate(conn, MIGRATIONS, target=1)
        conn.execute(
            "INSERT INTO indexed_files (path, name, file_type, byte_size, "
            "modified_at, indexed_at) VALUES ('/old.txt', 'old.txt', 1, 3, "
            "10, 10)"
        )
        conn.close()

    def test_upgrade_from_v1_keeps_rows(self, tmp_path: Path):
        db = tmp_path / "index.db"
        self._v1_database(db)
        with VectorStore.open(db, dimension=DIM) as store:
            assert store.schema_version() == CURRENT_SCHEMA_VERSION
            old = store.get("/old.txt")
            assert old.content_hash is None
            store.upsert(record("/new.txt", content_hash=b"\x02" * 16))
            assert store.get("/new.txt").content_hash == b"\x02" * 16

    def test_reopen_is_idempotent(self, tmp_path: Path):
        db = tmp_path / "index.db"
        VectorStore(db, dimension=DIM).close()
        with VectorStore.open(db, dimension=DIM) as store:
            assert store.schema_version() == CURRENT_SCHEMA_VERSION

    def test_single_version_row(self, tmp_path: Path):
        db = tmp_path / "index.db"
        self._v1_database(db)
        VectorStore(db, dimension=DIM).close()
        conn = sqlite3.connect(db)
        rows = conn.execute("SELECT version FROM schema_version").fetchall()
        conn.close()
        assert rows == [(CURRENT_SCHEMA_VERSION,)]

    def test_newer_schema_refused(self, tmp_path: Path):
        db = tmp_path / "index.db"
        VectorStore(db, dimension=DIM).close()
        conn = sqlite3.connect(db, isolation_level=None)
        conn.execute("UPDATE schema_version SET version = 99")
        conn.close()
        with pytest.raises(OpenError):
            VectorStore(db, dimension=DIM)

    def test_failed_migration_rolls_back(self, tmp_path: Path):
        db = tmp_path / "index.db"
        self._v1_database(db)
        conn = sqlite3.connect(db, isolation_level=None)
        broken = MIGRATIONS + (
            MIGRATIONS[1].__class__(
                version=3,
                description="broken",
                statements=("CREATE TABLE t (x)", "NOT VALID SQL"),
            ),
        )
        with pytest.raises(sqlite3.Error):
            migrate(conn, broken, target=3)
        assert read_version(conn) == 1
        tables = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        assert "t" not in tables
        conn.close()

    def test_unopenable_path(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(OpenError):
            VectorStore(blocker / "index.db", dimension=DIM)


class TestReaderConnections:
    @pytest.fixture
    def store(self, tmp_path: Path):
        with VectorStore.open(tmp_path / "index.db", dimension=DIM) as s:
            yield s

    def test_finished_threads_do_not_keep_connections(
        self, store: VectorStore
    ):
        for _ in range(50):
            t = threading.Thread(target=store.count)
            t.start()
            t.join()
        assert store.reader_count <= 1

        store.count()
        assert store.reader_count == 1

    def test_release_thread_connection(self, store: VectorStore):
        store.count()
        assert store.reader_count == 1
        store.release_thread_connection()
        assert store.reader_count == 0
        store.release_thread_connection()

        assert store.count() == 0
        assert store.reader_count == 1


class TestStoredDimension:
    def test_open_infers_dimension(self, tmp_path: Path):
        db = tmp_path / "index.db"
        with VectorStore.open(db, dimension=DIM) as store:
            store.upsert(record("/data/a.txt", unit(1.0)))
            store.upsert(record("/data/b.txt"))

        with VectorStore.open(db) as store:
            assert store.dimension == DIM
            assert store.stored_dimension() == DIM
            assert store.count_embedded() == 1

    def test_empty_index_uses_default(self, tmp_path: Path):
        with VectorStore.open(tmp_path / "index.db") as store:
            assert store.stored_dimension() is None
            assert store.dimension == DEFAULT_TEXT_DIMENSION

    def test_explicit_dimension_wins(self, tmp_path: Path):
        db = tmp_path / "index.db"
        with VectorStore.open(db, dimension=DIM) as store:
            store.upsert(record("/data/a.txt", unit(1.0)))

        with VectorStore.open(db, dimension=4) as store:
            assert store.dimension == 4
            assert store.count_embedded() == 0
