"""MemoryEngine: the single-writer front door to the memory substrate."""

from __future__ import annotations

import asyncio
import dataclasses
import sqlite3
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
from loguru import logger

from hypnos.core.constants import (
    ASSOCIATION_COSINE_SCALE,
    ASSOCIATION_TAG_BONUS,
    ASSOCIATION_TOP_M,
    SHORT_TERM_CAPACITY,
)
from hypnos.core.consolidator import SleepConsolidator
from hypnos.core.models import (
    ConsolidationReport,
    EngineConfiguration,
    MemoryItem,
    MemoryKind,
    MemoryRow,
    MessageRole,
    RetrievedMemory,
    ShortTermMessage,
)
from hypnos.core.retriever import Retriever
from hypnos.core.scoring import ImportanceScorer, RecencyBiasCalculator, SentimentScorer, clamp
from hypnos.core.summarizer import PassthroughSummarizer, SemanticSummarizer
from hypnos.core.vector_math import as_vector, dot_products, normalize, to_matrix
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.storage.graph_store import GraphStore
from hypnos.storage.procedural_rules import ProceduralRuleStore
from hypnos.storage.sqlite_store import SQLiteMemoryStore

if TYPE_CHECKING:
    from hypnos.config.settings import Settings


class MemoryEngine:
    """
    Async orchestrator over the store, graph, retriever and consolidator.

    Every public operation runs under one ``asyncio.Lock``, so at most one
    of them touches the store at a time. Embedding and summarization are
    the only awaits taken while holding it.

    Example:
        async with MemoryEngine("memory.db", HashEmbeddingProvider()) as engine:
            await engine.record_short_term("Exam on Friday", MessageRole.USER, ["school"])
            await engine.commit_episode_if_needed()
            results = await engine.retrieve_context("exam", limit=3)
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        embedding_provider: EmbeddingProvider,
        summarizer: Optional[SemanticSummarizer] = None,
        configuration: Optional[EngineConfiguration] = None,
        now_provider: Optional[Callable[[], datetime]] = None,
        rng: Optional[np.random.Generator] = None,
        short_term_capacity: int = SHORT_TERM_CAPACITY,
    ):
        """
        Open the engine over a database file.

        Args:
            db_path: SQLite database path, or ":memory:"
            embedding_provider: Text embedding capability
            summarizer: Cluster summarizer (defaults to passthrough)
            configuration: Tunables (defaults to EngineConfiguration())
            now_provider: Clock used for every timestamp the engine writes
            rng: Random source for drift and k-means seeding
            short_term_capacity: Size of the short-term ring buffer
        """
        self._now = now_provider or datetime.now
        self._configuration = dataclasses.replace(configuration or EngineConfiguration())
        self._rng = rng or np.random.default_rng()

        self.store = SQLiteMemoryStore(db_path, clock=self._now)
        self.graph = GraphStore(self.store)
        self.rules = ProceduralRuleStore(self.store, clock=self._now)
        self.embedding_provider = embedding_provider
        self.summarizer = summarizer or PassthroughSummarizer()

        self._short_term: Deque[ShortTermMessage] = deque(maxlen=short_term_capacity)
        self._importance = ImportanceScorer()
        self._sentiment = SentimentScorer()
        self._recency = RecencyBiasCalculator(self._configuration.recency_half_life_days)
        self._lock = asyncio.Lock()

        self._retriever = Retriever(
            self.store, self.graph, embedding_provider, self._configuration, rng=self._rng
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> MemoryEngine:
        """Build an engine wired up from application settings."""
        from hypnos.config.settings import Settings
        from hypnos.core.summarizer import create_summarizer
        from hypnos.embeddings import create_embedding_provider

        settings = settings or Settings()
        return cls(
            settings.storage.db_path,
            create_embedding_provider(settings.embedding),
            summarizer=create_summarizer(settings.summarizer),
            configuration=settings.engine_configuration(),
            short_term_capacity=settings.engine.short_term_capacity,
            **kwargs,
        )

    async def __aenter__(self) -> MemoryEngine:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the store and release provider resources."""
        async with self._lock:
            self.store.close()
            await self.embedding_provider.aclose()
            await self.summarizer.aclose()

    @property
    def configuration(self) -> EngineConfiguration:
        """A copy of the current configuration."""
        return dataclasses.replace(self._configuration)

    @property
    def short_term(self) -> List[ShortTermMessage]:
        return list(self._short_term)

    # -------------------------------------------------------------------------
    # Short-term buffer
    # -------------------------------------------------------------------------

    async def record_short_term(
        self,
        text: str,
        role: Union[MessageRole, str] = MessageRole.USER,
        tags: Iterable[str] = (),
    ) -> None:
        """Append a turn to the short-term buffer, evicting the oldest when full."""
        async with self._lock:
            self._short_term.append(
                ShortTermMessage(
                    text=text,
                    role=MessageRole(role),
                    timestamp=self._now(),
                    tags=list(tags),
                )
            )

    async def commit_episode_if_needed(self) -> Optional[int]:
        """
        Drain the short-term buffer into one episodic memory.

        The buffer is only cleared once the row and its associations are
        stored; on any failure it is left as it was and the error re-raised.

        Returns:
            Id of the new episodic memory, or None if the buffer was empty
        """
        async with self._lock:
            if not self._short_term:
                return None

            episode = list(self._short_term)
            now = self._now()
            text = "\n".join(f"{m.role.value}: {m.text}" for m in episode)
            tags = sorted({tag for m in episode for tag in m.tags})
            embedding = normalize(as_vector(await self.embedding_provider.embed_one(text)))

            row = MemoryRow(
                id=0,
                kind=MemoryKind.EPISODIC,
                text=text,
                embedding=embedding,
                created_at=now,
                updated_at=now,
                last_accessed_at=now,
                importance=self._importance.score(text, tags),
                sentiment=self._sentiment.sentiment(text),
                recency_bias=self._recency.recency_bias(now, now),
                tags=tags,
            )
            with self.store.transaction():
                memory_id = self.store.insert_memory(row)
                self._link_associations(memory_id, embedding, tags)

            self._short_term.clear()
            logger.debug(f"Committed episode {memory_id} from {len(episode)} messages")
            return memory_id

    # -------------------------------------------------------------------------
    # Procedural rules
    # -------------------------------------------------------------------------

    async def upsert_procedural_rule(self, text: str, tags: Iterable[str] = ()) -> int:
        """
        Insert or refresh a standing rule, matched by exact trimmed text.

        Raises:
            ValueError: If ``text`` is blank
        """
        trimmed = text.strip()
        if not trimmed:
            raise ValueError("Procedural rule text must not be empty")
        async with self._lock:
            embedding = normalize(as_vector(await self.embedding_provider.embed_one(trimmed)))
            return self.rules.upsert(trimmed, list(tags), embedding)

    async def list_procedural_rules(self) -> List[MemoryItem]:
        async with self._lock:
            return self.rules.list()

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def retrieve_context(self, query: str, limit: int = 5) -> List[RetrievedMemory]:
        """Rank memories against ``query``; see :class:`Retriever`."""
        async with self._lock:
            return await self._retriever.retrieve(query, limit)

    async def note_access(self, ids: Sequence[int]) -> None:
        """Stamp memories as accessed now. Store failures are logged, not raised."""
        if not ids:
            return
        async with self._lock:
            try:
                self.store.update_last_accessed(list(ids), self._now())
            except sqlite3.Error as e:
                logger.error(f"Failed to record access for {list(ids)}: {e}")

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    async def rebuild_graph_incremental(self) -> int:
        """
        Re-run association linking for every embedded episodic memory.

        Returns:
            Number of memories relinked
        """
        async with self._lock:
            rows = [
                row for row in self.store.fetch_memories(kinds=[MemoryKind.EPISODIC])
                if row.embedding is not None
            ]
            with self.store.transaction():
                for row in rows:
                    self._link_associations(row.id, row.embedding, row.tags)
            logger.info(f"Relinked associations for {len(rows)} episodic memories")
            return len(rows)

    async def add_associative_edge(self, src: int, dst: int, weight: float) -> None:
        async with self._lock:
            self.graph.upsert_edge(src, dst, weight)

    # -------------------------------------------------------------------------
    # Consolidation
    # -------------------------------------------------------------------------

    async def nightly_consolidate(self, budget_seconds: Optional[float] = None) -> ConsolidationReport:
        """
        Run one sleep consolidation pass.

        Args:
            budget_seconds: Synthesis budget; defaults to the configured per-tick budget
        """
        if budget_seconds is None:
            budget_seconds = self._configuration.sleep_budget_seconds_per_tick
        async with self._lock:
            consolidator = SleepConsolidator(
                self.store,
                self.graph,
                self.embedding_provider,
                self.summarizer,
                self._configuration,
                rng=self._rng,
                on_insert=self._link_associations,
            )
            return await consolidator.run(budget_seconds, self._now())

    # -------------------------------------------------------------------------
    # Maintenance and configuration
    # -------------------------------------------------------------------------

    async def delete_memory(self, memory_id: int) -> bool:
        """Delete a memory and its edges. Returns False if it did not exist."""
        async with self._lock:
            with self.store.transaction():
                return self.store.delete_memory(memory_id)

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            counts: Dict[str, Any] = self.store.stats()
            counts["short_term"] = len(self._short_term)
            return counts

    async def set_drift_probability(self, p: float) -> None:
        async with self._lock:
            self._configuration.drift_probability = clamp(p)

    async def set_recency_half_life(self, days: float) -> None:
        async with self._lock:
            self._configuration.recency_half_life_days = max(1.0, days)
            self._recency = RecencyBiasCalculator(self._configuration.recency_half_life_days)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _link_associations(self, new_id: int, embedding: np.ndarray, tags: Sequence[str]) -> None:
        """Connect ``new_id`` to its most similar episodic and semantic memories."""
        dimension = embedding.shape[0]
        others = [
            row for row in self.store.fetch_memories(kinds=[MemoryKind.EPISODIC, MemoryKind.SEMANTIC])
            if row.id != new_id and row.embedding is not None and row.embedding.shape[0] == dimension
        ]
        if not others:
            return

        cosines = dot_products(embedding, to_matrix((row.embedding for row in others), dimension))
        order = np.argsort(-cosines, kind="stable")[:ASSOCIATION_TOP_M]
        tag_set = set(tags)
        threshold = self._configuration.similarity_threshold

        linked = 0
        for index in order:
            similarity = float(cosines[index])
            if similarity < threshold:
                continue
            row = others[int(index)]
            weight = clamp(ASSOCIATION_COSINE_SCALE * similarity)
            if tag_set.intersection(row.tags):
                weight = clamp(weight + ASSOCIATION_TAG_BONUS)
            self.graph.upsert_edge(new_id, row.id, weight)
            linked += 1
        if linked:
            logger.debug(f"Linked memory {new_id} to {linked} associations")
