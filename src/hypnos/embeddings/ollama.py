"""Embeddings from a local Ollama server."""

from typing import List, Optional, Sequence

import httpx
import numpy as np
from loguru import logger

from hypnos.core.vector_math import as_vector, normalize
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.utils.exceptions import (
    EmbeddingDimensionError,
    EmbeddingResponseError,
    EmbeddingTransportError,
)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "nomic-embed-text"


class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Calls ``POST {base_url}/api/embed`` with ``{"model", "input"}``.

    The response must carry one vector per input under ``embeddings``,
    each of exactly ``dimension`` floats.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        dimension: int = 768,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._dimension = dimension
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        if not texts:
            return []

        try:
            response = await self._client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": list(texts)},
            )
        except httpx.HTTPError as e:
            raise EmbeddingTransportError(f"Ollama embed request failed: {e}") from e

        if not response.is_success:
            raise EmbeddingResponseError(
                f"Ollama embed returned HTTP {response.status_code}"
            )

        try:
            raw = response.json()["embeddings"]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingResponseError(f"Malformed Ollama embed response: {e}") from e

        if not isinstance(raw, list) or len(raw) != len(texts):
            raise EmbeddingResponseError(
                f"Expected {len(texts)} embeddings from Ollama, got "
                f"{len(raw) if isinstance(raw, list) else type(raw).__name__}"
            )

        vectors = []
        for values in raw:
            try:
                vector = as_vector(values)
            except (TypeError, ValueError) as e:
                raise EmbeddingResponseError(f"Non-numeric embedding from Ollama: {e}") from e
            if vector.shape[0] != self._dimension:
                raise EmbeddingDimensionError(
                    f"Expected dimension {self._dimension}, got {vector.shape[0]}"
                )
            vectors.append(normalize(vector))

        logger.debug(f"Embedded {len(vectors)} texts with {self.model}")
        return vectors

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
