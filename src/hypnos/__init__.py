"""Hypnos - persistent multi-tier memory with sleep consolidation."""

__version__ = "0.1.0"

from hypnos.core.engine import MemoryEngine
from hypnos.core.models import (
    ConsolidationReport,
    EngineConfiguration,
    MemoryItem,
    MemoryKind,
    MessageRole,
    RetrievedMemory,
)

__all__ = [
    "MemoryEngine",
    "ConsolidationReport",
    "EngineConfiguration",
    "MemoryItem",
    "MemoryKind",
    "MessageRole",
    "RetrievedMemory",
    "__version__",
]
