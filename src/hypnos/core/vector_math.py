"""Vector utilities over float32 embeddings.

Embeddings are stored unit-normalized, so a plain dot product doubles as
cosine similarity everywhere in the engine.
"""

from typing import Iterable, Optional, Sequence, Union

import numpy as np
from loguru import logger

VectorLike = Union[np.ndarray, Sequence[float]]

_EPSILON = np.finfo(np.float64).eps


def as_vector(values: VectorLike) -> np.ndarray:
    """Coerce ``values`` into a contiguous 1-D float32 array."""
    return np.ascontiguousarray(np.asarray(values, dtype=np.float32).reshape(-1))


def l2_norm(vector: VectorLike) -> float:
    """L2 norm accumulated in float64."""
    v = np.asarray(vector, dtype=np.float64)
    return float(np.sqrt(np.dot(v, v)))


def normalize(vector: np.ndarray) -> np.ndarray:
    """
    Scale ``vector`` in place to unit L2 norm.

    Vectors whose norm is at or below machine epsilon are left untouched
    (a zero vector stays zero).

    Args:
        vector: float32 array, modified in place

    Returns:
        The same array, for chaining
    """
    norm = l2_norm(vector)
    if norm > _EPSILON:
        vector *= np.float32(1.0 / norm)
    return vector


def to_matrix(vectors: Iterable[VectorLike], dimension: Optional[int] = None) -> np.ndarray:
    """Stack vectors into a (n, d) float32 matrix."""
    rows = [as_vector(v) for v in vectors]
    if not rows:
        return np.zeros((0, dimension or 0), dtype=np.float32)
    return np.vstack(rows)


def dot_products(query: VectorLike, matrix: Union[np.ndarray, Iterable[VectorLike]]) -> np.ndarray:
    """
    Dot product of ``query`` against every row of ``matrix``.

    Uses a single BLAS matrix-vector product. Results match
    :func:`dot_products_loop` within 1e-5.

    Args:
        query: Query vector of dimension d
        matrix: (n, d) matrix, or an iterable of n vectors of dimension d

    Returns:
        float32 array of n scores
    """
    q = as_vector(query)
    m = matrix if isinstance(matrix, np.ndarray) and matrix.ndim == 2 else to_matrix(matrix, q.shape[0])
    if m.shape[0] == 0:
        return np.zeros(0, dtype=np.float32)
    return np.asarray(m, dtype=np.float32) @ q


def dot_products_loop(query: VectorLike, matrix: Iterable[VectorLike]) -> np.ndarray:
    """Reference implementation of :func:`dot_products` with an explicit loop."""
    q = [float(x) for x in as_vector(query)]
    results = []
    for row in matrix:
        total = 0.0
        for a, b in zip(as_vector(row), q):
            total += float(a) * b
        results.append(total)
    return np.asarray(results, dtype=np.float32)


def cosine(a: VectorLike, b: VectorLike) -> float:
    """Dot product of two pre-normalized vectors."""
    return float(np.dot(as_vector(a), as_vector(b)))


def embedding_to_blob(vector: Optional[VectorLike]) -> Optional[bytes]:
    """Serialize an embedding as raw float32 bytes."""
    if vector is None:
        return None
    return as_vector(vector).tobytes()


def blob_to_embedding(blob: Optional[bytes]) -> Optional[np.ndarray]:
    """
    Deserialize raw float32 bytes.

    Empty or missing blobs decode to None, as do blobs whose length is not a
    whole number of float32 values.
    """
    if not blob:
        return None
    if len(blob) % np.dtype(np.float32).itemsize:
        logger.warning(f"Ignoring truncated embedding blob of {len(blob)} bytes")
        return None
    # frombuffer views are read-only; copy so callers may normalize in place
    return np.frombuffer(blob, dtype=np.float32).copy()
