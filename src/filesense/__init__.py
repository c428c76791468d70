import warnings

# suppress GIL warning from tokenizers (used by sentence-transformers)
warnings.filterwarnings("ignore", message=".*global interpreter lock.*")

from filesense.duplicates import (
    DuplicateAnalysis,
    DuplicateAnalyzer,
    DuplicateConfig,
    DuplicateGroup,
    KeepPolicy,
)
from filesense.embeddings import (
    StubTextEmbeddingProvider,
    StubVisualEmbeddingProvider,
    TextEmbeddingProvider,
    VisualEmbeddingProvider,
)
from filesense.errors import FilesenseError
from filesense.file_types import FileKind
from filesense.indexer import Indexer, IndexerConfig, IndexerStatus
from filesense.search import QueryEngine, SearchOptions, SearchResults
from filesense.store import ImageStore, IndexedRecord, VectorStore
from filesense.watcher import EventType, FileWatcher, WatchEvent

__all__ = [
    "DuplicateAnalysis",
    "DuplicateAnalyzer",
    "DuplicateConfig",
    "DuplicateGroup",
    "EventType",
    "FileKind",
    "FileWatcher",
    "FilesenseError",
    "ImageStore",
    "IndexedRecord",
    "Indexer",
    "IndexerConfig",
    "IndexerStatus",
    "KeepPolicy",
    "QueryEngine",
    "SearchOptions",
    "SearchResults",
    "StubTextEmbeddingProvider",
    "StubVisualEmbeddingProvider",
    "TextEmbeddingProvider",
    "VisualEmbeddingProvider",
    "VectorStore",
    "WatchEvent",
]
