"""Hybrid retrieval: similarity seeds, graph spreading, drift and rules.

Ranking blends four signals into an activation score:

    activation = 0.60 * cosine + 0.20 * importance
               + 0.10 * recency_bias + 0.10 * neighbor_weight

The top-cosine memories seed the search, their graph neighbors join the
candidate pool, and each seed's strongest neighbor is promoted into the
results even when it would not otherwise make the cut. A random "drift"
pick and any relevant procedural rules may be appended on top of that, so
the result list can be longer than the requested limit.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from hypnos.core.constants import (
    ACTIVATION_COSINE_WEIGHT,
    ACTIVATION_IMPORTANCE_WEIGHT,
    ACTIVATION_NEIGHBOR_WEIGHT,
    ACTIVATION_RECENCY_WEIGHT,
    BULLET_SNIPPET_LENGTH,
    DRIFT_TOP_FRACTION,
    FALLBACK_SNIPPET_LENGTH,
    MAX_SNIPPET_BUCKETS,
    PROCEDURAL_COSINE_THRESHOLD,
    PROCEDURAL_IMPORTANCE_THRESHOLD,
    SEED_COUNT,
)
from hypnos.core.models import EngineConfiguration, MemoryKind, MemoryRow, Reason, RetrievedMemory
from hypnos.core.vector_math import as_vector, dot_products, normalize, to_matrix
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.storage.graph_store import GraphStore
from hypnos.storage.sqlite_store import SQLiteMemoryStore

_LETTER_RUNS = re.compile(r"[^\W\d_]+")


@dataclass
class RetrievalCandidate:
    """A memory under consideration, with its query cosine and graph weight."""

    memory: MemoryRow
    cosine: float
    neighbor_weight: float = 0.0


def activation_score(memory: MemoryRow, cosine: float, neighbor_weight: float) -> float:
    """Blend the four ranking signals."""
    return (
        ACTIVATION_COSINE_WEIGHT * cosine
        + ACTIVATION_IMPORTANCE_WEIGHT * memory.importance
        + ACTIVATION_RECENCY_WEIGHT * memory.recency_bias
        + ACTIVATION_NEIGHBOR_WEIGHT * neighbor_weight
    )


def query_tokens(query: str) -> Set[str]:
    """Lower-cased runs of letters in ``query``."""
    return set(_LETTER_RUNS.findall(query.lower()))


def build_reasons(candidate: RetrievalCandidate) -> List[Reason]:
    reasons = []
    if candidate.cosine > 0:
        reasons.append(Reason("similarity", candidate.cosine))
    if candidate.memory.importance > 0:
        reasons.append(Reason("importance", candidate.memory.importance))
    if candidate.neighbor_weight > 0:
        reasons.append(Reason("neighbor_edge", candidate.neighbor_weight))
    return reasons


def build_bullets(selected: Sequence[RetrievalCandidate]) -> Dict[int, str]:
    """
    Group selections by their first sorted tag (or kind) into bullets.

    Only the first ``MAX_SNIPPET_BUCKETS`` groups in key order get a bullet;
    every member of such a group shares it as its snippet.
    """
    groups: Dict[str, List[RetrievalCandidate]] = {}
    for candidate in selected:
        tags = sorted(candidate.memory.tags)
        key = tags[0] if tags else candidate.memory.kind.value
        groups.setdefault(key, []).append(candidate)

    bullets: Dict[int, str] = {}
    for key in sorted(groups)[:MAX_SNIPPET_BUCKETS]:
        members = groups[key]
        sample = members[0].memory.text
        first_line = sample.split("\n", 1)[0]
        bullet = f"• {key}: {first_line[:BULLET_SNIPPET_LENGTH]}"
        for candidate in members:
            bullets[candidate.memory.id] = bullet
    return bullets


class Retriever:
    """Ranks stored memories against a free-text query."""

    def __init__(
        self,
        store: SQLiteMemoryStore,
        graph: GraphStore,
        embedding_provider: EmbeddingProvider,
        configuration: EngineConfiguration,
        rng: Optional[np.random.Generator] = None,
    ):
        self.store = store
        self.graph = graph
        self.embedding_provider = embedding_provider
        self.configuration = configuration
        self.rng = rng or np.random.default_rng()

    async def retrieve(self, query: str, limit: int) -> List[RetrievedMemory]:
        """
        Retrieve up to ``limit`` memories plus any graph, drift or rule bonuses.

        Args:
            query: Free-text query
            limit: Base number of results; <= 0 returns nothing

        Returns:
            Results ordered by activation, highest first
        """
        if limit <= 0:
            return []

        query_vector = normalize(as_vector(await self.embedding_provider.embed_one(query)))
        dimension = query_vector.shape[0]

        rows = self.store.fetch_memories(
            kinds=[MemoryKind.EPISODIC, MemoryKind.SEMANTIC, MemoryKind.PROCEDURAL]
        )
        procedural_rows = [r for r in rows if r.kind == MemoryKind.PROCEDURAL]

        embedded: List[MemoryRow] = []
        mismatched = 0
        for row in rows:
            if row.embedding is None:
                continue
            if row.embedding.shape[0] != dimension:
                mismatched += 1
                continue
            embedded.append(row)
        if mismatched:
            logger.warning(
                f"Skipped {mismatched} memories whose embedding dimension differs from {dimension}"
            )

        cosines = dot_products(query_vector, to_matrix((r.embedding for r in embedded), dimension))
        cosine_by_id = {row.id: float(c) for row, c in zip(embedded, cosines)}
        embedded_by_id = {row.id: row for row in embedded}

        ranked = sorted(
            (RetrievalCandidate(row, cosine_by_id[row.id]) for row in embedded),
            key=lambda c: c.cosine,
            reverse=True,
        )
        seeds = ranked[:SEED_COUNT]
        threshold = self.configuration.neighbor_edge_threshold

        candidates: Dict[int, RetrievalCandidate] = {c.memory.id: c for c in seeds}
        seed_neighbors: Dict[int, Dict[int, float]] = {}
        for seed in seeds:
            weights = self.graph.neighbor_weights(seed.memory.id, threshold)
            seed_neighbors[seed.memory.id] = weights
            for other, weight in weights.items():
                existing = candidates.get(other)
                if existing is not None:
                    existing.neighbor_weight = max(existing.neighbor_weight, weight)
                elif other in embedded_by_id:
                    candidates[other] = RetrievalCandidate(
                        embedded_by_id[other], cosine_by_id[other], weight
                    )

        scored = sorted(
            (
                (c, activation_score(c.memory, c.cosine, c.neighbor_weight))
                for c in candidates.values()
            ),
            key=lambda pair: pair[1],
            reverse=True,
        )
        selected: Dict[int, Tuple[RetrievalCandidate, float]] = {
            c.memory.id: (c, a) for c, a in scored[:limit]
        }
        extra_allowance = 0

        # Bonus: each seed's strongest neighbor rides along
        for seed in seeds:
            weights = seed_neighbors[seed.memory.id]
            if not weights:
                continue
            other, weight = max(weights.items(), key=lambda item: item[1])
            neighbor = candidates.get(other)
            if neighbor is None:
                continue
            activation = activation_score(
                neighbor.memory,
                neighbor.cosine,
                max(neighbor.neighbor_weight, weight),
            )
            if other in selected:
                if activation > selected[other][1]:
                    selected[other] = (neighbor, activation)
            else:
                selected[other] = (neighbor, activation)
                extra_allowance += 1

        if rows and self.rng.random() < self.configuration.drift_probability:
            extra_allowance += self._drift(rows, selected, candidates, cosine_by_id)

        procedural_added = self._include_procedural(
            query, procedural_rows, selected, cosine_by_id
        )

        bullets = build_bullets([c for c, _ in selected.values()])
        cutoff = limit + extra_allowance + (1 if procedural_added else 0)
        ordered = sorted(selected.values(), key=lambda pair: pair[1], reverse=True)[:cutoff]

        results = []
        for candidate, activation in ordered:
            memory = candidate.memory
            citation = memory.meta.get("citation")
            results.append(
                RetrievedMemory(
                    id=memory.id,
                    kind=memory.kind,
                    text_snippet=bullets.get(memory.id, memory.text[:FALLBACK_SNIPPET_LENGTH]),
                    tags=list(memory.tags),
                    activation=activation,
                    reasons=build_reasons(candidate),
                    citation=citation if isinstance(citation, str) else None,
                )
            )

        payload = {
            "query": query,
            "selected_ids": [r.id for r in results],
            "reasons": [[{"label": x.label, "score": x.score} for x in r.reasons] for r in results],
        }
        logger.info(f"retrieval {json.dumps(payload, sort_keys=True)}")
        return results

    def _drift(
        self,
        rows: List[MemoryRow],
        selected: Dict[int, Tuple[RetrievalCandidate, float]],
        candidates: Dict[int, RetrievalCandidate],
        cosine_by_id: Dict[int, float],
    ) -> int:
        """Inject one high-importance memory; returns 1 if it was newly added."""
        by_importance = sorted(rows, key=lambda r: r.importance, reverse=True)
        top_count = max(1, math.ceil(len(by_importance) * DRIFT_TOP_FRACTION))
        top_slice = by_importance[:top_count]
        row = next((r for r in top_slice if r.id not in selected), top_slice[0])

        existing = candidates.get(row.id)
        neighbor_weight = existing.neighbor_weight if existing else 0.0
        candidate = RetrievalCandidate(row, cosine_by_id.get(row.id, 0.0), neighbor_weight)
        activation = activation_score(row, candidate.cosine, neighbor_weight)
        logger.debug(f"Drift picked memory {row.id}")

        if row.id in selected:
            if activation > selected[row.id][1]:
                selected[row.id] = (candidate, activation)
            return 0
        selected[row.id] = (candidate, activation)
        return 1

    def _include_procedural(
        self,
        query: str,
        procedural_rows: List[MemoryRow],
        selected: Dict[int, Tuple[RetrievalCandidate, float]],
        cosine_by_id: Dict[int, float],
    ) -> bool:
        """Add relevant rules not already selected; returns True if any were added."""
        tokens = query_tokens(query)
        selected_tags = {t.lower() for c, _ in selected.values() for t in c.memory.tags}
        added = False
        for row in procedural_rows:
            if row.id in selected:
                continue
            tag_matches = sum(
                1 for t in row.tags if t.lower() in selected_tags or t.lower() in tokens
            )
            cosine = cosine_by_id.get(row.id, 0.0)
            if (
                tag_matches == 0
                and cosine < PROCEDURAL_COSINE_THRESHOLD
                and row.importance < PROCEDURAL_IMPORTANCE_THRESHOLD
            ):
                continue
            candidate = RetrievalCandidate(row, cosine)
            selected[row.id] = (candidate, activation_score(row, cosine, min(1, tag_matches)))
            added = True
        return added
