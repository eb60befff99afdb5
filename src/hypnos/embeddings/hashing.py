"""Deterministic offline embeddings for tests and demos."""

from collections import OrderedDict
from typing import List, Sequence

import numpy as np

from hypnos.core.vector_math import normalize
from hypnos.embeddings.base import EmbeddingProvider

DEFAULT_CACHE_SIZE = 4096


class HashEmbeddingProvider(EmbeddingProvider):
    """
    Bag-of-characters embedding.

    Each character of the lower-cased text adds ``ord(ch) % 97`` to slot
    ``i % dimension``, then the vector is normalized. The most recently used
    ``cache_size`` texts are cached.
    """

    def __init__(self, dimension: int = 64, cache_size: int = DEFAULT_CACHE_SIZE):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        if cache_size < 0:
            raise ValueError("cache_size must not be negative")
        self._dimension = dimension
        self._cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def cached_texts(self) -> int:
        return len(self._cache)

    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [self._vector(text).copy() for text in texts]

    def _vector(self, text: str) -> np.ndarray:
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached
        vector = np.zeros(self._dimension, dtype=np.float32)
        for i, ch in enumerate(text.lower()):
            vector[i % self._dimension] += ord(ch) % 97
        normalize(vector)
        if self._cache_size:
            self._cache[text] = vector
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return vector
