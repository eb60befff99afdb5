"""Embedding providers."""

from typing import TYPE_CHECKING

from hypnos.embeddings.base import EmbeddingProvider
from hypnos.embeddings.hashing import HashEmbeddingProvider
from hypnos.embeddings.ollama import OllamaEmbeddingProvider
from hypnos.utils.exceptions import ConfigurationError

if TYPE_CHECKING:
    from hypnos.config.settings import EmbeddingSettings


def create_embedding_provider(settings: "EmbeddingSettings") -> EmbeddingProvider:
    """Build the provider selected by ``settings.backend``."""
    if settings.backend == "hash":
        return HashEmbeddingProvider(dimension=settings.dimension)
    if settings.backend == "ollama":
        return OllamaEmbeddingProvider(
            base_url=settings.base_url,
            model=settings.model,
            dimension=settings.dimension,
            timeout=settings.timeout,
        )
    if settings.backend == "sentence-transformers":
        # Imported here so torch is only loaded when this backend is chosen
        from hypnos.embeddings.sentence_transformer import SentenceTransformerEmbeddingProvider
        return SentenceTransformerEmbeddingProvider(
            model=settings.model,
            dimension=settings.dimension,
        )
    raise ConfigurationError(f"Unknown embedding backend: {settings.backend}")


__all__ = [
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "create_embedding_provider",
]
