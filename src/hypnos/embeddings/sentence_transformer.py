"""Embeddings from a local sentence-transformers model."""

import asyncio
from typing import List, Optional, Sequence

import numpy as np
from loguru import logger
from sentence_transformers import SentenceTransformer

from hypnos.core.vector_math import as_vector, normalize
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.utils.exceptions import EmbeddingDimensionError, EmbeddingError

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """
    Wraps a SentenceTransformer model.

    The model is loaded on first use and encoding runs in a worker thread
    so the event loop stays responsive.
    """

    def __init__(self, model: str = DEFAULT_MODEL, dimension: int = 384):
        self.model_name = model
        self._dimension = dimension
        self._model: Optional[SentenceTransformer] = None

    @property
    def dimension(self) -> int:
        return self._dimension

    def _load(self) -> SentenceTransformer:
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self._load().encode(texts, convert_to_numpy=True)

    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        if not texts:
            return []
        try:
            encoded = await asyncio.to_thread(self._encode, list(texts))
        except (OSError, RuntimeError, ValueError) as e:
            raise EmbeddingError(f"sentence-transformers encode failed: {e}") from e

        vectors = []
        for row in encoded:
            vector = as_vector(row)
            if vector.shape[0] != self._dimension:
                raise EmbeddingDimensionError(
                    f"Expected dimension {self._dimension}, got {vector.shape[0]}"
                )
            vectors.append(normalize(vector))
        return vectors
