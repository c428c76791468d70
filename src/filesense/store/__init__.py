from filesense.store.image_store import (
    DEFAULT_VISUAL_DIMENSION,
    ImageRecord,
    ImageStore,
)
from filesense.store.schema import CURRENT_SCHEMA_VERSION, MIGRATIONS
from filesense.store.vector_store import (
    DEFAULT_TEXT_DIMENSION,
    IndexedRecord,
    RecordScan,
    VectorStore,
    canonical_path,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_TEXT_DIMENSION",
    "DEFAULT_VISUAL_DIMENSION",
    "MIGRATIONS",
    "ImageRecord",
    "ImageStore",
    "IndexedRecord",
    "RecordScan",
    "VectorStore",
    "canonical_path",
]
