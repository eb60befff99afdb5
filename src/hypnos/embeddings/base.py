"""Embedding provider interface."""

from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np


class EmbeddingProvider(ABC):
    """
    Turns text into fixed-dimension float32 vectors.

    Implementations return one unit-normalized vector per input text, in
    input order, and raise an ``EmbeddingError`` subclass on failure.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed a batch of texts."""

    async def embed_one(self, text: str) -> np.ndarray:
        """Embed a single text."""
        vectors = await self.embed([text])
        return vectors[0]

    async def aclose(self) -> None:
        """Release any held resources."""
