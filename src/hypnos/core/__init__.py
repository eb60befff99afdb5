"""Core memory types, scoring and algorithms."""

from hypnos.core.models import (
    ConsolidationReport,
    EdgeRow,
    EngineConfiguration,
    MemoryItem,
    MemoryKind,
    MemoryRow,
    MessageRole,
    Reason,
    RetrievedMemory,
    ShortTermMessage,
)

__all__ = [
    "ConsolidationReport",
    "EdgeRow",
    "EngineConfiguration",
    "MemoryItem",
    "MemoryKind",
    "MemoryRow",
    "MessageRole",
    "Reason",
    "RetrievedMemory",
    "ShortTermMessage",
]
