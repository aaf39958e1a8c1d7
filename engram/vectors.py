"""
Vector helpers - packing, normalization and per-metric similarity.

This module provides:
- Compact float32 byte packing for embeddings stored in containers
- Unit normalization applied by both index variants
- Distances matching what hnswlib reports, and their conversion to similarity
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np

from .errors import DimensionError

logger = logging.getLogger(__name__)

VectorLike = Union[np.ndarray, Sequence[float]]

SPACES = ("cosine", "l2", "ip")

# Little-endian float32 regardless of host byte order
_DTYPE = np.dtype("<f4")


def as_vector(values: VectorLike) -> np.ndarray:
    """Coerce a sequence into a 1-D float32 array."""
    vec = np.asarray(values, dtype=np.float32)
    if vec.ndim != 1:
        vec = vec.ravel()
    return vec


def encode(vector: Optional[VectorLike]) -> Optional[bytes]:
    """
    Pack a vector as little-endian float32 bytes.

    Returns None when there is no vector.
    """
    if vector is None:
        return None
    return as_vector(vector).astype(_DTYPE, copy=False).tobytes()


def decode(data: Optional[bytes]) -> Optional[np.ndarray]:
    """Decode vector bytes back to a float32 array."""
    if not data:
        return None
    if len(data) % 4:
        raise ValueError(f"Vector payload of {len(data)} bytes is not a float32 array")
    return np.frombuffer(data, dtype=_DTYPE).astype(np.float32)


def normalize(vector: VectorLike) -> np.ndarray:
    """Scale a vector to unit length. Zero vectors are returned unchanged."""
    vec = as_vector(vector)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec.copy()
    return (vec / norm).astype(np.float32)


def check_dimensions(vector: np.ndarray, dimensions: Optional[int]) -> None:
    """Raise DimensionError when a vector does not match the expected length."""
    if dimensions is not None and vector.shape[0] != dimensions:
        raise DimensionError(
            f"Vector has {vector.shape[0]} dimensions, index expects {dimensions}"
        )


def cosine_similarity(vec1: VectorLike, vec2: VectorLike) -> float:
    """Compute cosine similarity between two vectors."""
    a = as_vector(vec1)
    b = as_vector(vec2)
    if a.shape != b.shape:
        raise DimensionError(f"Vectors must have the same length ({a.shape[0]} != {b.shape[0]})")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def distances(space: str, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """
    Distances from ``query`` to every row of ``matrix``.

    Uses the same definitions as hnswlib: cosine and ip give ``1 - a.b``,
    l2 gives the squared euclidean distance.
    """
    if space in ("cosine", "ip"):
        return 1.0 - matrix @ query
    if space == "l2":
        diff = matrix - query
        return np.einsum("ij,ij->i", diff, diff)
    raise ValueError(f"Unknown space {space!r}; expected one of {SPACES}")


def distance(space: str, a: VectorLike, b: VectorLike) -> float:
    """Distance between two vectors under ``space``."""
    return float(distances(space, as_vector(a).reshape(1, -1), as_vector(b))[0])


def distance_to_similarity(space: str, value: float) -> float:
    """
    Convert an index distance into a similarity score.

    cosine, ip: ``1 - d`` (the cosine or dot product).
    l2: ``1 - d / 2``; for unit vectors the squared distance is
    ``2 - 2cos`` so this is the cosine again and scores stay comparable
    across metrics.
    """
    if space in ("cosine", "ip"):
        return 1.0 - float(value)
    if space == "l2":
        return 1.0 - float(value) / 2.0
    raise ValueError(f"Unknown space {space!r}; expected one of {SPACES}")


def similarity(space: str, a: VectorLike, b: VectorLike) -> float:
    """Similarity of two vectors under ``space``, computed on their unit forms."""
    return distance_to_similarity(space, distance(space, normalize(a), normalize(b)))
