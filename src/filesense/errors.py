"""Exception types raised by filesense components.

Batch operations (indexer crawls, duplicate scans) recover from per-file
failures locally and report counts instead of raising; the classes below
are what store, provider and configuration calls raise directly.
"""


class FilesenseError(Exception):
    """Base class for all filesense errors."""


class NotInitializedError(FilesenseError):
    """A required model or store has not been set up."""


class ModelNotFoundError(FilesenseError):
    """The embedding model could not be located."""


class ModelLoadError(FilesenseError):
    """The embedding model was found but failed to load."""


class EmbeddingError(FilesenseError):
    """Inference failed for a given input."""


class StorageError(FilesenseError):
    """Schema or write failure in the backing store."""


class OpenError(StorageError):
    """The store file could not be opened or initialized."""


class NotFoundError(FilesenseError, KeyError):
    """Keyed lookup miss."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return Exception.__str__(self)


class InvalidInputError(FilesenseError, ValueError):
    """Malformed argument, wrong vector dimension or oversize input."""


class OperationCancelled(FilesenseError):
    """A cooperative cancel flag was observed."""


class ResourceError(FilesenseError):
    """A resource ceiling was hit."""


class TooManyFilesError(ResourceError):
    """A scan discovered more files than its configured cap."""
