"""Standing procedural rules, keyed by exact text."""

from datetime import datetime
from typing import Callable, List, Optional, Sequence

import numpy as np
from loguru import logger

from hypnos.core.constants import (
    PROCEDURAL_INSERT_IMPORTANCE,
    PROCEDURAL_UPDATE_IMPORTANCE_FLOOR,
)
from hypnos.core.models import MemoryItem, MemoryKind, MemoryRow
from hypnos.storage.sqlite_store import SQLiteMemoryStore


class ProceduralRuleStore:
    """
    Upsert and list procedural memories.

    A rule is identified by its (trimmed) text: upserting the same text
    again refreshes the existing row instead of inserting a duplicate.
    """

    def __init__(self, store: SQLiteMemoryStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or datetime.now

    def find(self, text: str) -> Optional[MemoryRow]:
        """Return the procedural row whose text equals ``text``, if any."""
        for row in self.store.fetch_memories(kinds=[MemoryKind.PROCEDURAL]):
            if row.text == text:
                return row
        return None

    def upsert(self, text: str, tags: Sequence[str], embedding: Optional[np.ndarray]) -> int:
        """
        Insert a rule, or refresh the rule with identical text.

        Args:
            text: Rule text (already trimmed, non-empty)
            tags: Rule tags
            embedding: Normalized embedding of the text

        Returns:
            Id of the inserted or updated row
        """
        unique_tags = sorted(set(tags))
        with self.store.transaction():
            existing = self.find(text)
            if existing is not None:
                self.store.update_procedural_memory(
                    existing.id,
                    tags=unique_tags,
                    importance=max(existing.importance, PROCEDURAL_UPDATE_IMPORTANCE_FLOOR),
                    recency_bias=1.0,
                    embedding=embedding,
                )
                logger.debug(f"Refreshed procedural rule {existing.id}")
                return existing.id

            now = self._clock()
            rule_id = self.store.insert_memory(
                MemoryRow(
                    id=0,
                    kind=MemoryKind.PROCEDURAL,
                    text=text,
                    embedding=embedding,
                    created_at=now,
                    updated_at=now,
                    importance=PROCEDURAL_INSERT_IMPORTANCE,
                    recency_bias=1.0,
                    tags=unique_tags,
                )
            )
            logger.debug(f"Inserted procedural rule {rule_id}")
            return rule_id

    def list(self) -> List[MemoryItem]:
        return [row.to_item() for row in self.store.fetch_memories(kinds=[MemoryKind.PROCEDURAL])]
