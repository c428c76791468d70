"""Vector math and on-disk vector encoding.

Embeddings are stored as raw little-endian float32 bytes, exactly
``dimension * 4`` long. Anything else is treated as "no embedding" on read.
"""

import hashlib
import struct

import numpy as np

EPSILON = 1e-4
NORM_TOLERANCE = 1e-3
VECTOR_DTYPE = np.dtype("<f4")

DEFAULT_PERSON = b"filesense"


def hash64(data: str | bytes, person: bytes = DEFAULT_PERSON) -> int:
    """Compute a 64-bit BLAKE2b hash of a string or byte string."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    h = hashlib.blake2b(
        data,
        digest_size=8,
        person=person.ljust(16, b"\x00"),
    )
    return struct.unpack("<Q", h.digest())[0]


def as_vector(values) -> np.ndarray:
    """Coerce ``values`` to a 1-D float32 array."""
    vec = np.asarray(values, dtype=np.float32)
    if vec.ndim != 1:
        raise ValueError(f"expected a 1-D vector, got shape {vec.shape}")
    return vec


def normalize(vec: np.ndarray) -> np.ndarray:
    """Scale ``vec`` to unit L2 norm; zero vectors are returned unchanged."""
    vec = as_vector(vec)
    norm = float(np.linalg.norm(vec))
    if norm < EPSILON:
        return vec
    return (vec / norm).astype(np.float32)


def is_unit(vec: np.ndarray, tolerance: float = NORM_TOLERANCE) -> bool:
    return abs(float(np.linalg.norm(vec)) - 1.0) <= tolerance


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 when either vector is (near) zero."""
    a = as_vector(a)
    b = as_vector(b)
    if a.shape != b.shape:
        raise ValueError(f"dimension mismatch: {a.shape[0]} != {b.shape[0]}")
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom < EPSILON:
        return 0.0
    return float(np.dot(a, b)) / denom


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    q_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ query
    scores = np.zeros(len(matrix), dtype=np.float32)
    ok = denom >= EPSILON
    scores[ok] = dots[ok] / denom[ok]
    return scores


def vector_to_blob(vec: np.ndarray) -> bytes:
    return as_vector(vec).astype(VECTOR_DTYPE, copy=False).tobytes()


def blob_to_vector(blob: bytes | None, dimension: int) -> np.ndarray | None:
    """Decode a stored blob, or None if it is missing or malformed."""
    if blob is None or len(blob) != dimension * VECTOR_DTYPE.itemsize:
        return None
    return np.frombuffer(blob, dtype=VECTOR_DTYPE).astype(np.float32)


def stub_vector(seed_data: str | bytes, dimension: int) -> np.ndarray:
    """Deterministic pseudo-random unit vector seeded from ``seed_data``.

    Reproducible across runs and platforms but carries no meaning; only
    useful for offline tests.
    """
    rng = np.random.default_rng(hash64(seed_data))
    vec = rng.uniform(-1.0, 1.0, dimension).astype(np.float32)
    return normalize(vec)
