"""Top-K cosine similarity search over the text and image indexes.

Search is an exhaustive scan: the query is encoded once, stored vectors are
scored in chunks, and a bounded min-heap keeps the best ``max_results``.
Failures come back as unsuccessful :class:`SearchResults` rather than
exceptions; partial results are never returned.
"""

from __future__ import annotations

import heapq
import os
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Generic, TypeVar

import numpy as np
import structlog

from filesense.embeddings import TextProvider, VisualProvider
from filesense.errors import FilesenseError, NotFoundError
from filesense.file_types import FileKind
from filesense.store import (
    ImageRecord,
    ImageStore,
    IndexedRecord,
    VectorStore,
    canonical_path,
)
from filesense.vectors import as_vector, cosine_scores

if TYPE_CHECKING:
    from filesense.indexer import Indexer

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RESULTS = 20
MAX_RESULTS = 100
SCORE_CHUNK_SIZE = 512

ERR_MODEL_NOT_LOADED = "Embedding model not loaded"
ERR_VISUAL_NOT_LOADED = "Visual model not loaded"
ERR_NO_STORE = "No vector database set"
ERR_NO_IMAGE_STORE = "No image index set"
ERR_EMPTY_QUERY = "Query is empty"


@dataclass
class SearchOptions:
    max_results: int = DEFAULT_MAX_RESULTS
    min_score: float = 0.0
    directory: str | None = None
    # None searches every kind
    kind: FileKind | None = None
    sort_by_score: bool = True


@dataclass
class SearchResult:
    path: str
    display_name: str
    kind: FileKind
    byte_size: int
    modified_at: int
    score: float


@dataclass
class ImageSearchResult:
    path: str
    display_name: str
    width: int
    height: int
    byte_size: int
    modified_at: int
    score: float


R = TypeVar("R", SearchResult, ImageSearchResult)


@dataclass
class SearchResults(Generic[R]):
    query: str
    results: list[R] = field(default_factory=list)
    search_time_ms: float = 0.0
    success: bool = True
    error: str = ""

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    @property
    def message(self) -> str:
        if not self.success:
            return self.error
        return f"{len(self.results)} result(s) in {self.search_time_ms:.1f}ms"


@dataclass
class SearchStats:
    total_files: int = 0
    files_with_embeddings: int = 0
    total_size_bytes: int = 0
    images_indexed: int = 0
    indexer_running: bool = False
    indexer_progress: float = 1.0


Rec = TypeVar("Rec", IndexedRecord, ImageRecord)


def top_k(
    query: np.ndarray,
    records: Iterable[Rec],
    max_results: int,
    min_score: float = 0.0,
    accept: Callable[[Rec], bool] | None = None,
) -> list[tuple[float, int, Rec]]:
    """Score ``records`` against ``query`` and keep the best ``max_results``.

    Returns ``(score, scan_position, record)`` triples, unordered.
    """
    heap: list[tuple[float, int, Rec]] = []
    chunk: list[Rec] = []
    position = 0

    def score_chunk() -> None:
        nonlocal position
        matrix = np.stack([r.embedding for r in chunk])
        scores = cosine_scores(query, matrix)
        for record, score in zip(chunk, scores):
            score = float(score)
            entry = (score, position, record)
            position += 1
            if score < min_score:
                continue
            if len(heap) < max_results:
                heapq.heappush(heap, entry)
            elif score > heap[0][0]:
                heapq.heapreplace(heap, entry)
        chunk.clear()

    for record in records:
        if accept is not None and not accept(record):
            continue
        chunk.append(record)
        if len(chunk) >= SCORE_CHUNK_SIZE:
            score_chunk()
    if chunk:
        score_chunk()
    return heap


def _order(
    entries: list[tuple[float, int, Rec]], by_score: bool
) -> list[tuple[float, int, Rec]]:
    if by_score:
        return sorted(entries, key=lambda e: (-e[0], e[1]))
    return sorted(entries, key=lambda e: e[1])


def _validate_options(options: SearchOptions) -> str | None:
    if options.max_results <= 0:
        return "max_results must be positive"
    if options.max_results > MAX_RESULTS:
        return f"max_results must be at most {MAX_RESULTS}"
    return None


class QueryEngine:
    """Answers text and image similarity queries."""

    def __init__(
        self,
        store: VectorStore | None = None,
        provider: TextProvider | None = None,
        visual_provider: VisualProvider | None = None,
        image_store: ImageStore | None = None,
        indexer: Indexer | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._visual_provider = visual_provider
        self._image_store = image_store
        self._indexer = indexer

    def set_store(self, store: VectorStore | None) -> None:
        self._store = store

    def set_provider(self, provider: TextProvider | None) -> None:
        self._provider = provider

    def set_visual_provider(self, provider: VisualProvider | None) -> None:
        self._visual_provider = provider

    def set_image_store(self, image_store: ImageStore | None) -> None:
        self._image_store = image_store

    def set_indexer(self, indexer: Indexer | None) -> None:
        self._indexer = indexer

    def is_ready(self) -> bool:
        return (
            self._store is not None
            and self._provider is not None
            and self._provider.is_loaded()
        )

    def is_image_ready(self) -> bool:
        return (
            self._image_store is not None
            and self._visual_provider is not None
            and self._visual_provider.is_loaded()
        )

    # -- text --------------------------------------------------------------

    def text_query(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> SearchResults[SearchResult]:
        options = options or SearchOptions()
        started = time.perf_counter()

        def fail(message: str) -> SearchResults[SearchResult]:
            return self._failure(query, message, started)

        if self._store is None:
            return fail(ERR_NO_STORE)
        if self._provider is None or not self._provider.is_loaded():
            return fail(ERR_MODEL_NOT_LOADED)
        if not query or not query.strip():
            return fail(ERR_EMPTY_QUERY)

        try:
            vector = self._provider.encode_text(query)
        except FilesenseError as e:
            return fail(str(e))
        return self._rank_files(query, vector, options, started)

    def search_by_embedding(
        self,
        vector: np.ndarray,
        options: SearchOptions | None = None,
        label: str = "<vector>",
    ) -> SearchResults[SearchResult]:
        """Rank indexed files against a caller-provided vector."""
        started = time.perf_counter()
        if self._store is None:
            return self._failure(label, ERR_NO_STORE, started)
        return self._rank_files(
            label, vector, options or SearchOptions(), started
        )

    def similar_to_file(
        self,
        path: str | Path,
        options: SearchOptions | None = None,
    ) -> SearchResults[SearchResult]:
        """Files most similar to an already indexed file, excluding it."""
        started = time.perf_counter()
        path = canonical_path(path)
        label = f"similar:{os.path.basename(path)}"
        if self._store is None:
            return self._failure(label, ERR_NO_STORE, started)
        try:
            record = self._store.get(path)
        except NotFoundError:
            return self._failure(label, f"File not indexed: {path}", started)
        except FilesenseError as e:
            return self._failure(label, str(e), started)
        if record.embedding is None:
            return self._failure(
                label, f"File has no embedding: {path}", started
            )
        return self._rank_files(
            label,
            record.embedding,
            options or SearchOptions(),
            started,
            exclude=path,
        )

    def _rank_files(
        self,
        label: str,
        vector: np.ndarray,
        options: SearchOptions,
        started: float,
        exclude: str | None = None,
    ) -> SearchResults[SearchResult]:
        assert self._store is not None
        invalid = _validate_options(options)
        if invalid:
            return self._failure(label, invalid, started)
        query = as_vector(vector)
        if query.shape[0] != self._store.dimension:
            return self._failure(
                label,
                f"query dimension {query.shape[0]} does not match index "
                f"dimension {self._store.dimension}",
                started,
            )

        scan = (
            self._store.iter_under(options.directory)
            if options.directory
            else self._store.iter_embedded()
        )
        kind = options.kind

        def accept(record: IndexedRecord) -> bool:
            if kind is not None and kind is not FileKind.UNKNOWN:
                if record.kind is not kind:
                    return False
            return record.path != exclude

        try:
            entries = top_k(
                query, scan, options.max_results, options.min_score, accept
            )
        except FilesenseError as e:
            return self._failure(label, str(e), started)

        results = [
            SearchResult(
                path=r.path,
                display_name=r.display_name,
                kind=r.kind,
                byte_size=r.byte_size,
                modified_at=r.modified_at,
                score=score,
            )
            for score, _, r in _order(entries, options.sort_by_score)
        ]
        return self._success(label, results, started)

    # -- images ------------------------------------------------------------

    def image_query_by_text(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> SearchResults[ImageSearchResult]:
        options = options or SearchOptions()
        started = time.perf_counter()
        failure = self._check_image_ready(query, started)
        if failure is not None:
            return failure
        if not query or not query.strip():
            return self._failure(query, ERR_EMPTY_QUERY, started)

        assert self._visual_provider is not None
        try:
            vector = self._visual_provider.encode_text(query)
        except FilesenseError as e:
            return self._failure(query, str(e), started)
        return self._rank_images(query, vector, options, started)

    def image_query_by_image(
        self,
        path: str | Path,
        options: SearchOptions | None = None,
    ) -> SearchResults[ImageSearchResult]:
        options = options or SearchOptions()
        started = time.perf_counter()
        path = canonical_path(path)
        label = f"similar:{os.path.basename(path)}"
        failure = self._check_image_ready(label, started)
        if failure is not None:
            return failure

        assert self._visual_provider is not None
        try:
            encoded = self._visual_provider.encode_image(path)
        except (FilesenseError, OSError) as e:
            return self._failure(label, f"Image load error: {e}", started)
        return self._rank_images(
            label, encoded.vector, options, started, exclude=path
        )

    def _check_image_ready(
        self, label: str, started: float
    ) -> SearchResults[ImageSearchResult] | None:
        if self._image_store is None:
            return self._failure(label, ERR_NO_IMAGE_STORE, started)
        if (
            self._visual_provider is None
            or not self._visual_provider.is_loaded()
        ):
            return self._failure(label, ERR_VISUAL_NOT_LOADED, started)
        return None

    def _rank_images(
        self,
        label: str,
        vector: np.ndarray,
        options: SearchOptions,
        started: float,
        exclude: str | None = None,
    ) -> SearchResults[ImageSearchResult]:
        assert self._image_store is not None
        invalid = _validate_options(options)
        if invalid:
            return self._failure(label, invalid, started)
        query = as_vector(vector)
        if query.shape[0] != self._image_store.dimension:
            return self._failure(
                label,
                f"query dimension {query.shape[0]} does not match image "
                f"index dimension {self._image_store.dimension}",
                started,
            )

        scan = (
            self._image_store.iter_under(options.directory)
            if options.directory
            else self._image_store.iter_embedded()
        )
        try:
            entries = top_k(
                query,
                scan,
                options.max_results,
                options.min_score,
                lambda r: r.path != exclude,
            )
        except FilesenseError as e:
            return self._failure(label, str(e), started)

        results = [
            ImageSearchResult(
                path=r.path,
                display_name=r.display_name,
                width=r.width,
                height=r.height,
                byte_size=r.byte_size,
                modified_at=r.modified_at,
                score=score,
            )
            for score, _, r in _order(entries, options.sort_by_score)
        ]
        return self._success(label, results, started)

    # -- reporting ---------------------------------------------------------

    def stats(self) -> SearchStats:
        out = SearchStats()
        if self._store is not None:
            out.total_files = self._store.count()
            out.files_with_embeddings = self._store.count_embedded()
            out.total_size_bytes = self._store.total_bytes()
        if self._image_store is not None:
            out.images_indexed = self._image_store.count()
        if self._indexer is not None:
            out.indexer_running = self._indexer.is_busy()
            out.indexer_progress = self._indexer.stats().progress
        return out

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0

    def _failure(self, query: str, message: str, started: float):
        logger.debug("query %r failed: %s", query, message)
        return SearchResults(
            query=query,
            search_time_ms=self._elapsed_ms(started),
            success=False,
            error=message,
        )

    def _success(self, query: str, results: list, started: float):
        elapsed = self._elapsed_ms(started)
        logger.debug(
            "query %r: %d result(s) in %.1fms", query, len(results), elapsed
        )
        return SearchResults(
            query=query,
            results=results,
            search_time_ms=elapsed,
        )
