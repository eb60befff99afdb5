"""Shared utilities for Hypnos."""

from hypnos.utils.exceptions import (
    ConfigurationError,
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingResponseError,
    EmbeddingTransportError,
    HypnosError,
    StorageError,
    SummarizationError,
)

__all__ = [
    "HypnosError",
    "ConfigurationError",
    "StorageError",
    "EmbeddingError",
    "EmbeddingResponseError",
    "EmbeddingTransportError",
    "EmbeddingDimensionError",
    "SummarizationError",
]
