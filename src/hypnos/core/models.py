"""Core memory data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import numpy as np

# Open-ended metadata values, restricted to what JSON can carry exactly
JSONValue = Union[None, bool, int, float, str, List["JSONValue"], Dict[str, "JSONValue"]]
Meta = Dict[str, JSONValue]


class MemoryKind(Enum):
    """Classification of stored memories."""
    EPISODIC = "episodic"        # Committed conversational episodes
    SEMANTIC = "semantic"        # Digests synthesized during sleep
    PROCEDURAL = "procedural"    # Standing rules upserted by callers


class MessageRole(Enum):
    """Speaker of a short-term message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class MemoryRow:
    """A stored unit of memory, as persisted."""

    id: int
    kind: MemoryKind
    text: str
    embedding: Optional[np.ndarray]
    created_at: datetime
    updated_at: datetime
    last_accessed_at: Optional[datetime] = None
    importance: float = 0.0
    sentiment: Optional[float] = None
    recency_bias: float = 1.0
    tags: List[str] = field(default_factory=list)
    meta: Meta = field(default_factory=dict)

    @property
    def is_archived(self) -> bool:
        """Archived rows keep their text but lose their embedding."""
        return self.embedding is None

    def to_item(self) -> "MemoryItem":
        """Caller-facing view of this row (no embedding)."""
        return MemoryItem(
            id=self.id,
            kind=self.kind,
            text=self.text,
            tags=list(self.tags),
            created_at=self.created_at,
            updated_at=self.updated_at,
            importance=self.importance,
            sentiment=self.sentiment,
            recency_bias=self.recency_bias,
            meta=dict(self.meta),
        )


@dataclass
class EdgeRow:
    """Undirected association between two memories, stored as src_id <= dst_id."""

    src_id: int
    dst_id: int
    weight: float
    created_at: datetime
    updated_at: datetime

    def other(self, memory_id: int) -> int:
        """Return the endpoint that is not ``memory_id``."""
        return self.dst_id if self.src_id == memory_id else self.src_id


@dataclass
class MemoryItem:
    """A memory as exposed to collaborators."""

    id: int
    kind: MemoryKind
    text: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    importance: float
    sentiment: Optional[float]
    recency_bias: float
    meta: Meta = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "text": self.text,
            "tags": self.tags,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "importance": self.importance,
            "sentiment": self.sentiment,
            "recency_bias": self.recency_bias,
            "meta": self.meta,
        }


@dataclass
class Reason:
    """One provenance signal that contributed to a retrieval result."""

    label: str
    score: float


@dataclass
class RetrievedMemory:
    """A ranked, explainable retrieval result."""

    id: int
    kind: MemoryKind
    text_snippet: str
    tags: List[str]
    activation: float
    reasons: List[Reason] = field(default_factory=list)
    citation: Optional[str] = None

    def reason_score(self, label: str) -> Optional[float]:
        """Score of the reason with ``label``, if present."""
        for reason in self.reasons:
            if reason.label == label:
                return reason.score
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "text_snippet": self.text_snippet,
            "tags": self.tags,
            "activation": self.activation,
            "reasons": [{"label": r.label, "score": r.score} for r in self.reasons],
            "citation": self.citation,
        }


@dataclass
class ShortTermMessage:
    """A conversational turn waiting in the short-term buffer."""

    text: str
    role: MessageRole
    timestamp: datetime
    tags: List[str] = field(default_factory=list)


@dataclass
class EngineConfiguration:
    """Runtime configuration for the memory engine."""

    recency_half_life_days: float = 14.0
    drift_probability: float = 0.03
    neighbor_edge_threshold: float = 0.2
    similarity_threshold: float = 0.35
    sleep_window_start: str = "23:00"
    sleep_window_end: str = "06:00"
    sleep_budget_seconds_per_tick: float = 60.0


@dataclass
class ConsolidationReport:
    """Report from a sleep consolidation run."""

    ran: bool = False
    completed: bool = False
    episodics_processed: int = 0
    clusters_formed: int = 0
    clusters_failed: int = 0
    clusters_resumed: int = 0
    semantic_ids: List[int] = field(default_factory=list)
    edges_woven: int = 0
    memories_decayed: int = 0
    memories_archived: int = 0
    duration_seconds: float = 0.0
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ran": self.ran,
            "completed": self.completed,
            "episodics_processed": self.episodics_processed,
            "clusters_formed": self.clusters_formed,
            "clusters_failed": self.clusters_failed,
            "clusters_resumed": self.clusters_resumed,
            "semantic_ids": self.semantic_ids,
            "edges_woven": self.edges_woven,
            "memories_decayed": self.memories_decayed,
            "memories_archived": self.memories_archived,
            "duration_seconds": self.duration_seconds,
            "reason": self.reason,
        }
