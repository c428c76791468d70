"""Embedding providers.

Two model families are used: a text model for file contents and a bimodal
image/text (CLIP) model for pictures. Both are loaded through
sentence-transformers and always return L2-normalized float32 vectors.

The stub providers map inputs to hash-seeded unit vectors. They need no
model download and are deterministic, but the vectors mean nothing; use
them for tests and offline runs only.
"""

from __future__ import annotations

import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
import structlog
from PIL import Image

from filesense.errors import (
    EmbeddingError,
    InvalidInputError,
    ModelLoadError,
    ModelNotFoundError,
    NotInitializedError,
)
from filesense.file_types import is_visual_image
from filesense.vectors import stub_vector

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = structlog.get_logger(__name__)

DEFAULT_TEXT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_VISUAL_MODEL = "clip-ViT-B-32"
TEXT_DIMENSION = 384
VISUAL_DIMENSION = 512

# bounds tokenizer work; the model truncates to its own token window
DEFAULT_MAX_CHARS = 8192
# CLIP's text tower has a 77 token window
DEFAULT_VISUAL_MAX_CHARS = 200

QUERY_CACHE_SIZE = 256


@dataclass
class ImageEmbedding:
    vector: np.ndarray
    width: int
    height: int


@runtime_checkable
class TextProvider(Protocol):
    def is_loaded(self) -> bool: ...

    def dimension(self) -> int: ...

    def encode_text(self, text: str) -> np.ndarray: ...

    def encode_batch(self, texts: list[str]) -> list[np.ndarray]: ...


@runtime_checkable
class VisualProvider(Protocol):
    def is_loaded(self) -> bool: ...

    def dimension(self) -> int: ...

    def encode_text(self, text: str) -> np.ndarray: ...

    def encode_image(self, path: str | Path) -> ImageEmbedding: ...


def _get_device() -> str:
    """Detect best available device for inference."""
    try:
        import torch

        if torch.cuda.is_available():
            return "cuda"
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return "mps"
    except ImportError:
        pass
    return "cpu"


def _looks_like_path(model: str) -> bool:
    return model.startswith((".", "~", os.sep)) or os.path.exists(model)


def _load_sentence_transformer(model: str, device: str) -> SentenceTransformer:
    from sentence_transformers import SentenceTransformer

    if _looks_like_path(model) and not Path(model).expanduser().exists():
        raise ModelNotFoundError(f"Model not found: {model}")

    logger.info("loading embedding model %s on %s", model, device)
    try:
        return SentenceTransformer(
            str(Path(model).expanduser()) if _looks_like_path(model) else model,
            device=device,
        )
    except OSError as e:
        # huggingface_hub reports unknown repos and missing files as OSError
        raise ModelNotFoundError(f"Model not found: {model}: {e}") from e
    except Exception as e:
        raise ModelLoadError(f"Failed to load model {model}: {e}") from e


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


class _QueryCache:
    """Small LRU of recently encoded strings."""

    def __init__(self, size: int = QUERY_CACHE_SIZE) -> None:
        self._size = size
        self._items: OrderedDict[str, np.ndarray] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> np.ndarray | None:
        with self._lock:
            vec = self._items.get(key)
            if vec is not None:
                self._items.move_to_end(key)
            return vec

    def put(self, key: str, vec: np.ndarray) -> None:
        with self._lock:
            self._items[key] = vec
            self._items.move_to_end(key)
            while len(self._items) > self._size:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class TextEmbeddingProvider:
    """Wraps a sentence-transformers model for text embedding.

    Text longer than ``max_chars`` is truncated rather than rejected.
    """

    truncates = True

    def __init__(
        self,
        model: str = DEFAULT_TEXT_MODEL,
        max_chars: int = DEFAULT_MAX_CHARS,
        device: str | None = None,
        lazy: bool = False,
    ) -> None:
        self._model_name = model
        self._max_chars = max_chars
        self._device = device or _get_device()
        self._model: SentenceTransformer | None = None
        self._dim = 0
        self._cache = _QueryCache()
        self._lock = threading.Lock()
        if not lazy:
            self.load()

    @property
    def model(self) -> str:
        return self._model_name

    @property
    def device(self) -> str:
        return self._device

    def load(self, model_path: str | None = None) -> None:
        name = model_path or self._model_name
        model = _load_sentence_transformer(name, self._device)
        dim = model.get_sentence_embedding_dimension()
        if dim is None:
            raise ModelLoadError(
                f"Model {name} does not report embedding dimension"
            )
        with self._lock:
            self._model = model
            self._model_name = name
            self._dim = int(dim)
            self._cache.clear()

    def unload(self) -> None:
        with self._lock:
            self._model = None
            self._cache.clear()

    def is_loaded(self) -> bool:
        return self._model is not None

    def dimension(self) -> int:
        return self._dim

    def _encode(self, texts: list[str]) -> list[np.ndarray]:
        with self._lock:
            if self._model is None:
                raise NotInitializedError("Embedding model not loaded")
            try:
                vecs = self._model.encode(
                    texts,
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except (RuntimeError, ValueError) as e:
                raise EmbeddingError(f"Inference error: {e}") from e
        return [np.asarray(v, dtype=np.float32) for v in vecs]

    def encode_text(self, text: str) -> np.ndarray:
        text = _truncate(text, self._max_chars)
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        vec = self._encode([text])[0]
        self._cache.put(text, vec)
        return vec

    def encode_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        return self._encode([_truncate(t, self._max_chars) for t in texts])


class VisualEmbeddingProvider:
    """CLIP model embedding images and text into one shared space."""

    def __init__(
        self,
        model: str = DEFAULT_VISUAL_MODEL,
        max_chars: int = DEFAULT_VISUAL_MAX_CHARS,
        device: str | None = None,
        lazy: bool = False,
    ) -> None:
        self._model_name = model
        self._max_chars = max_chars
        self._device = device or _get_device()
        self._model: SentenceTransformer | None = None
        self._dim = 0
        self._lock = threading.Lock()
        if not lazy:
            self.load()

    @property
    def model(self) -> str:
        return self._model_name

    def load(self, model_path: str | None = None) -> None:
        name = model_path or self._model_name
        model = _load_sentence_transformer(name, self._device)
        dim = model.get_sentence_embedding_dimension()
        if dim is None:
            # CLIP wrappers do not always publish a dimension; measure one
            sample = model.encode(["sample"], convert_to_numpy=True)
            dim = sample.shape[-1]
        with self._lock:
            self._model = model
            self._model_name = name
            self._dim = int(dim)

    def unload(self) -> None:
        with self._lock:
            self._model = None

    def is_loaded(self) -> bool:
        return self._model is not None

    def dimension(self) -> int:
        return self._dim

    def _encode(self, inputs: list) -> np.ndarray:
        with self._lock:
            if self._model is None:
                raise NotInitializedError("Visual model not loaded")
            try:
                vecs = self._model.encode(
                    inputs,
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except (RuntimeError, ValueError) as e:
                raise EmbeddingError(f"Inference error: {e}") from e
        return np.asarray(vecs[0], dtype=np.float32)

    def encode_text(self, text: str) -> np.ndarray:
        return self._encode([_truncate(text, self._max_chars)])

    def encode_image(self, path: str | Path) -> ImageEmbedding:
        path = os.fspath(path)
        if not is_visual_image(path):
            raise InvalidInputError(f"Unsupported image format: {path}")
        with Image.open(path) as img:
            rgb = img.convert("RGB")
            width, height = img.size
        return ImageEmbedding(
            vector=self._encode([rgb]),
            width=width,
            height=height,
        )


class StubTextEmbeddingProvider:
    """Deterministic, meaningless text vectors for tests."""

    truncates = True

    def __init__(
        self,
        dim: int = TEXT_DIMENSION,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        self._dim = dim
        self._max_chars = max_chars
        self._loaded = True
        self.encode_calls = 0

    def load(self, model_path: str | None = None) -> None:
        self._loaded = True

    def unload(self) -> None:
        self._loaded = False

    def is_loaded(self) -> bool:
        return self._loaded

    def dimension(self) -> int:
        return self._dim

    def encode_text(self, text: str) -> np.ndarray:
        if not self._loaded:
            raise NotInitializedError("Embedding model not loaded")
        self.encode_calls += 1
        return stub_vector(_truncate(text, self._max_chars), self._dim)

    def encode_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [self.encode_text(t) for t in texts]


class StubVisualEmbeddingProvider:
    """Deterministic, meaningless image vectors for tests.

    Images are still opened with Pillow to report real pixel dimensions.
    """

    def __init__(self, dim: int = VISUAL_DIMENSION) -> None:
        self._dim = dim
        self._loaded = True

    def load(self, model_path: str | None = None) -> None:
        self._loaded = True

    def unload(self) -> None:
        self._loaded = False

    def is_loaded(self) -> bool:
        return self._loaded

    def dimension(self) -> int:
        return self._dim

    def encode_text(self, text: str) -> np.ndarray:
        if not self._loaded:
            raise NotInitializedError("Visual model not loaded")
        return stub_vector(text, self._dim)

    def encode_image(self, path: str | Path) -> ImageEmbedding:
        if not self._loaded:
            raise NotInitializedError("Visual model not loaded")
        path = os.fspath(path)
        if not is_visual_image(path):
            raise InvalidInputError(f"Unsupported image format: {path}")
        with Image.open(path) as img:
            width, height = img.size
        data = Path(path).read_bytes()
        return ImageEmbedding(
            vector=stub_vector(data, self._dim),
            width=width,
            height=height,
        )


def create_text_provider(
    model: str = DEFAULT_TEXT_MODEL,
    stub: bool = False,
    device: str | None = None,
) -> TextProvider:
    if stub:
        return StubTextEmbeddingProvider()
    return TextEmbeddingProvider(model=model, device=device)


def create_visual_provider(
    model: str = DEFAULT_VISUAL_MODEL,
    stub: bool = False,
    device: str | None = None,
) -> VisualProvider:
    if stub:
        return StubVisualEmbeddingProvider()
    return VisualEmbeddingProvider(model=model, device=device)
