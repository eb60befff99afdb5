"""Custom exceptions for Hypnos."""


class HypnosError(Exception):
    """Base exception for all Hypnos errors."""

    pass


class ConfigurationError(HypnosError):
    """Configuration loading or validation error."""

    pass


class StorageError(HypnosError):
    """Persistent store could not be opened or migrated."""

    pass


class EmbeddingError(HypnosError):
    """Embedding provider failed."""

    pass


class EmbeddingResponseError(EmbeddingError):
    """Embedding backend returned a response that could not be decoded."""

    pass


class EmbeddingTransportError(EmbeddingError):
    """Embedding backend could not be reached."""

    pass


class EmbeddingDimensionError(EmbeddingError):
    """Embedding vector has an unexpected dimension."""

    pass


class SummarizationError(HypnosError):
    """Semantic summarizer failed to produce a digest."""

    pass
