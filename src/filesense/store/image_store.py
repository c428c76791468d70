"""Image embedding table living alongside ``indexed_files``.

Image vectors come from the visual model and occupy a different space
than the text vectors in :class:`VectorStore`; the two are never compared.
"""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import structlog

from filesense.errors import InvalidInputError, NotFoundError, StorageError
from filesense.store.vector_store import (
    SCAN_CHUNK_SIZE,
    VectorStore,
    canonical_path,
    prefix_clause,
    prefix_params,
    stored_width,
)
from filesense.vectors import as_vector, blob_to_vector, vector_to_blob

logger = structlog.get_logger(__name__)

DEFAULT_VISUAL_DIMENSION = 512

_IMAGE_COLUMNS = "path, name, embedding, width, height, byte_size, modified_at"


@dataclass
class ImageRecord:
    path: str
    display_name: str
    width: int
    height: int
    byte_size: int
    modified_at: int
    embedding: np.ndarray | None = field(default=None, compare=False)


class ImageScan:
    """Restartable scan over embedded image records."""

    def __init__(self, images: ImageStore, where: str, params: tuple) -> None:
        self._images = images
        self._where = where
        self._params = params

    def __iter__(self) -> Iterator[ImageRecord]:
        conn = self._images.store.read_connection()
        try:
            cursor = conn.execute(
                f"SELECT {_IMAGE_COLUMNS} FROM image_index "
                f"WHERE {self._where}",
                self._params,
            )
            while rows := cursor.fetchmany(SCAN_CHUNK_SIZE):
                for row in rows:
                    record = self._images._row_to_record(row)
                    if record.embedding is not None:
                        yield record
        except sqlite3.Error as e:
            raise StorageError(f"image scan failed: {e}") from e


class ImageStore:
    """Keyed image records stored in the same database as a VectorStore."""

    def __init__(
        self,
        store: VectorStore,
        dimension: int = DEFAULT_VISUAL_DIMENSION,
    ) -> None:
        self.store = store
        self.dimension = dimension
        self._init_table()

    @classmethod
    def open(
        cls,
        store: VectorStore,
        dimension: int | None = None,
    ) -> ImageStore:
        """Attach to ``store``, inferring the width as VectorStore.open does."""
        images = cls(store, dimension=dimension or DEFAULT_VISUAL_DIMENSION)
        if dimension is None:
            stored = images.stored_dimension()
            if stored:
                images.dimension = stored
        return images

    def _init_table(self) -> None:
        with self.store.write_lock:
            conn = self.store.get_raw_handle()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS image_index (
                        path TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        embedding BLOB,
                        width INTEGER NOT NULL DEFAULT 0,
                        height INTEGER NOT NULL DEFAULT 0,
                        byte_size INTEGER NOT NULL DEFAULT 0,
                        modified_at INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
            except sqlite3.Error as e:
                raise StorageError(f"cannot create image table: {e}") from e

    def _row_to_record(self, row: sqlite3.Row) -> ImageRecord:
        return ImageRecord(
            path=row["path"],
            display_name=row["name"],
            width=row["width"],
            height=row["height"],
            byte_size=row["byte_size"],
            modified_at=row["modified_at"],
            embedding=blob_to_vector(row["embedding"], self.dimension),
        )

    def upsert(self, record: ImageRecord) -> None:
        blob = None
        if record.embedding is not None:
            vec = as_vector(record.embedding)
            if vec.shape[0] != self.dimension:
                raise InvalidInputError(
                    f"Invalid embedding: expected dimension "
                    f"{self.dimension}, got {vec.shape[0]}"
                )
            blob = vector_to_blob(vec)
        path = canonical_path(record.path)
        with self.store.batch() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO image_index ({_IMAGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    path,
                    record.display_name or os.path.basename(path),
                    blob,
                    int(record.width),
                    int(record.height),
                    int(record.byte_size),
                    int(record.modified_at),
                ),
            )

    def get(self, path: str | Path) -> ImageRecord:
        conn = self.store.read_connection()
        try:
            row = conn.execute(
                f"SELECT {_IMAGE_COLUMNS} FROM image_index WHERE path = ?",
                (canonical_path(path),),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        if row is None:
            raise NotFoundError(f"Image not indexed: {path}")
        return self._row_to_record(row)

    def delete(self, path: str | Path) -> bool:
        with self.store.batch() as conn:
            cursor = conn.execute(
                "DELETE FROM image_index WHERE path = ?",
                (canonical_path(path),),
            )
            return cursor.rowcount > 0

    def delete_under(self, prefix: str | Path) -> int:
        with self.store.batch() as conn:
            cursor = conn.execute(
                f"DELETE FROM image_index WHERE {prefix_clause()}",
                prefix_params(prefix),
            )
            return cursor.rowcount

    def clear(self) -> None:
        with self.store.batch() as conn:
            conn.execute("DELETE FROM image_index")

    def is_fresh(self, path: str | Path, modified_at: int) -> bool:
        conn = self.store.read_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM image_index "
                "WHERE path = ? AND modified_at >= ? AND length(embedding) = ?",
                (canonical_path(path), int(modified_at), self.dimension * 4),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        return row is not None

    def iter_embedded(self) -> ImageScan:
        return ImageScan(
            self,
            "embedding IS NOT NULL AND length(embedding) = ?",
            (self.dimension * 4,),
        )

    def iter_under(self, prefix: str | Path) -> ImageScan:
        return ImageScan(
            self,
            f"embedding IS NOT NULL AND length(embedding) = ? "
            f"AND {prefix_clause()}",
            (self.dimension * 4, *prefix_params(prefix)),
        )

    def stored_dimension(self) -> int | None:
        conn = self.store.read_connection()
        try:
            return stored_width(conn, "image_index")
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e

    def count(self) -> int:
        conn = self.store.read_connection()
        try:
            row = conn.execute("SELECT COUNT(*) FROM image_index").fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        return int(row[0])
