"""Sleep consolidation: offline clustering and graph maintenance.

A run only does work inside the configured sleep window. It picks up the
episodic memories written since the last checkpoint, clusters them on the
unit sphere, synthesizes one semantic memory per cluster, weaves the new
semantics into the association graph, then decays edges, archives stale
episodics, refreshes recency and advances the checkpoint.

The checkpoint only moves when every cluster was synthesized within
budget. Each synthesized cluster is recorded in a progress entry tied to
the current checkpoint, so a retried batch skips the episodics already
digested and carries their semantics into the final weave.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from hypnos.core.constants import (
    ARCHIVE_AGE_DAYS,
    ARCHIVE_EMBEDDING_DROP_THRESHOLD,
    ARCHIVE_IMPORTANCE_FACTOR,
    ARCHIVE_IMPORTANCE_THRESHOLD,
    CHECKPOINT_KEY,
    EDGE_DECAY_FACTOR,
    EDGE_DECAY_FLOOR,
    KMEANS_MAX_CLUSTERS,
    KMEANS_MAX_ITERATIONS,
    KMEANS_MEMORIES_PER_CLUSTER,
    KMEANS_MIN_CLUSTERS,
    KMEANS_TOLERANCE,
    MIN_CLUSTER_SIZE,
    PROGRESS_KEY,
    SEMANTIC_IMPORTANCE_BONUS,
    SEMANTIC_MEMBER_EDGE_WEIGHT,
    SEMANTIC_PEER_COSINE_THRESHOLD,
    SEMANTIC_PEER_EDGE_WEIGHT,
    SEMANTIC_SOURCE_TAG,
)
from hypnos.core.models import ConsolidationReport, EngineConfiguration, MemoryKind, MemoryRow
from hypnos.core.scoring import RecencyBiasCalculator, clamp
from hypnos.core.summarizer import SemanticSummarizer
from hypnos.core.vector_math import as_vector, cosine, normalize, to_matrix
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.storage.graph_store import GraphStore
from hypnos.storage.sqlite_store import SQLiteMemoryStore
from hypnos.utils.exceptions import HypnosError

# Called for every inserted semantic row with (id, embedding, tags)
InsertHook = Callable[[int, np.ndarray, List[str]], None]

Checkpoint = Tuple[Optional[int], Optional[float]]


@dataclass
class BatchProgress:
    """Clusters already synthesized for the batch after ``checkpoint``."""

    checkpoint: Checkpoint
    episodic_ids: Set[int] = field(default_factory=set)
    semantic_ids: List[int] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(
            {
                "checkpoint": list(self.checkpoint),
                "episodic_ids": sorted(self.episodic_ids),
                "semantic_ids": self.semantic_ids,
            },
            sort_keys=True,
        )


def parse_clock(value: str) -> Optional[int]:
    """Parse ``HH:MM`` into minutes after midnight; None when malformed."""
    parts = value.split(":")
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours * 60 + minutes


def within_window(now: datetime, start: str, end: str) -> bool:
    """
    Whether ``now`` falls in the daily window [start, end).

    A window whose start is after its end wraps past midnight. A malformed
    window never matches.
    """
    start_minutes = parse_clock(start)
    end_minutes = parse_clock(end)
    if start_minutes is None or end_minutes is None:
        return False
    minutes = now.hour * 60 + now.minute
    if start_minutes <= end_minutes:
        return start_minutes <= minutes < end_minutes
    return minutes >= start_minutes or minutes < end_minutes


def cluster_count(n: int) -> int:
    """Number of clusters for ``n`` memories: n/50 rounded half-up, within [2, 32]."""
    estimate = int(n / KMEANS_MEMORIES_PER_CLUSTER + 0.5)
    return max(KMEANS_MIN_CLUSTERS, min(KMEANS_MAX_CLUSTERS, estimate))


def spherical_kmeans(
    vectors: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = KMEANS_MAX_ITERATIONS,
    tolerance: float = KMEANS_TOLERANCE,
) -> np.ndarray:
    """
    Cluster unit vectors by cosine similarity.

    Seeding is k-means++ on squared cosine distance ``(1 - dot)^2``. Each
    iteration assigns vectors to the centroid with the largest dot product
    and re-centers on the normalized member mean; a centroid that loses all
    members stays where it was.

    Args:
        vectors: (n, d) matrix of unit vectors
        k: Requested cluster count (capped at n)
        rng: Random source for seeding
        max_iterations: Iteration cap
        tolerance: Stop once every centroid moved less than this (1 - cos)

    Returns:
        Array of n cluster indices in [0, min(k, n))
    """
    n = vectors.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    k = max(1, min(k, n))

    centroids = [vectors[int(rng.integers(n))].copy()]
    while len(centroids) < k:
        dots = np.clip(vectors @ np.vstack(centroids).T, -1.0, 1.0)
        nearest = (1.0 - dots).min(axis=1)
        weights = nearest.astype(np.float64) ** 2
        cumulative = np.cumsum(weights)
        threshold = rng.random() * cumulative[-1]
        index = min(int(np.searchsorted(cumulative, threshold, side="left")), n - 1)
        centroids.append(vectors[index].copy())
    centroid_matrix = np.vstack(centroids)

    assignments = np.full(n, -1, dtype=np.int64)
    for iteration in range(max_iterations):
        updated = np.argmax(vectors @ centroid_matrix.T, axis=1)
        if np.array_equal(updated, assignments):
            break
        assignments = updated

        new_centroids = centroid_matrix.copy()
        for j in range(k):
            members = vectors[assignments == j]
            if len(members):
                new_centroids[j] = normalize(members.mean(axis=0).astype(np.float32))

        shift = np.abs(1.0 - np.sum(centroid_matrix * new_centroids, axis=1)).max()
        centroid_matrix = new_centroids
        if shift < tolerance:
            logger.debug(f"k-means converged after {iteration + 1} iterations")
            break

    return assignments


class SleepConsolidator:
    """Runs one consolidation pass over the store."""

    def __init__(
        self,
        store: SQLiteMemoryStore,
        graph: GraphStore,
        embedding_provider: EmbeddingProvider,
        summarizer: SemanticSummarizer,
        configuration: EngineConfiguration,
        rng: Optional[np.random.Generator] = None,
        on_insert: Optional[InsertHook] = None,
    ):
        self.store = store
        self.graph = graph
        self.embedding_provider = embedding_provider
        self.summarizer = summarizer
        self.configuration = configuration
        self.rng = rng or np.random.default_rng()
        self.on_insert = on_insert

    def within_sleep_window(self, now: datetime) -> bool:
        return within_window(
            now,
            self.configuration.sleep_window_start,
            self.configuration.sleep_window_end,
        )

    def load_checkpoint(self) -> Checkpoint:
        """Read ``(last_id, timestamp)``; missing or malformed state reads as (None, None)."""
        raw = self.store.read_engine_state(CHECKPOINT_KEY)
        if raw is None:
            return None, None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed consolidation checkpoint: {raw!r}")
            return None, None
        if not isinstance(payload, dict):
            return None, None

        last_id = payload.get("last_id")
        timestamp = payload.get("timestamp")
        if not isinstance(last_id, int) or isinstance(last_id, bool):
            last_id = None
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = None
        return last_id, float(timestamp) if timestamp is not None else None

    def save_checkpoint(self, last_id: int, timestamp: float) -> None:
        self.store.upsert_engine_state(
            CHECKPOINT_KEY,
            json.dumps({"last_id": last_id, "timestamp": timestamp}, sort_keys=True),
        )

    def load_progress(self, checkpoint: Checkpoint) -> BatchProgress:
        """
        Read the clusters already synthesized for the batch after ``checkpoint``.

        Progress recorded against a different checkpoint, or unreadable
        progress, reads as empty.
        """
        progress = BatchProgress(checkpoint)
        raw = self.store.read_engine_state(PROGRESS_KEY)
        if raw is None:
            return progress
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed consolidation progress: {raw!r}")
            return progress
        if not isinstance(payload, dict) or payload.get("checkpoint") != list(checkpoint):
            return progress

        def ids(key: str) -> List[int]:
            values = payload.get(key)
            if not isinstance(values, list):
                return []
            return [v for v in values if isinstance(v, int) and not isinstance(v, bool)]

        progress.episodic_ids = set(ids("episodic_ids"))
        progress.semantic_ids = ids("semantic_ids")
        return progress

    async def run(self, budget_seconds: float, now: datetime) -> ConsolidationReport:
        """
        Consolidate episodics written since the last checkpoint.

        Args:
            budget_seconds: Wall-clock budget for cluster synthesis
            now: Reference time for the window check, recency and checkpoint

        Returns:
            ConsolidationReport describing what happened
        """
        started = time.monotonic()
        report = ConsolidationReport()

        if not self.within_sleep_window(now):
            logger.debug("Sleep consolidation skipped: outside sleep window")
            report.reason = "outside sleep window"
            return report

        report.ran = True
        checkpoint = self.load_checkpoint()
        last_id, timestamp = checkpoint
        episodics = self.store.fetch_memories(
            kinds=[MemoryKind.EPISODIC],
            updated_after=datetime.fromtimestamp(timestamp) if timestamp is not None else None,
            after_id=last_id,
        )

        if not episodics:
            with self.store.transaction():
                self.save_checkpoint(last_id or 0, now.timestamp())
                self.store.delete_engine_state(PROGRESS_KEY)
            report.completed = True
            report.reason = "no new episodic memories"
            report.duration_seconds = time.monotonic() - started
            logger.debug("Sleep consolidation found nothing new")
            return report

        report.episodics_processed = len(episodics)
        progress = self.load_progress(checkpoint)
        resumed = self.store.fetch_memories(kinds=[MemoryKind.SEMANTIC], ids=progress.semantic_ids)
        report.clusters_resumed = len(resumed)
        pending = [row for row in episodics if row.id not in progress.episodic_ids]
        if progress.episodic_ids:
            logger.info(
                f"Resuming sleep batch: {len(resumed)} semantics already synthesized, "
                f"{len(pending)} episodics pending"
            )

        clusters = self._cluster(pending)
        logger.debug(f"Clustered {len(pending)} episodics into {len(clusters)} usable clusters")

        semantics: List[MemoryRow] = []
        report.completed = True
        for members in clusters:
            if time.monotonic() - started >= budget_seconds:
                logger.info(
                    f"Sleep budget of {budget_seconds}s spent with "
                    f"{len(clusters) - len(semantics) - report.clusters_failed} clusters left"
                )
                report.completed = False
                report.reason = "budget exhausted"
                break
            try:
                semantic = await self._synthesize(members, now, progress)
            except HypnosError as e:
                logger.warning(f"Skipping cluster of {len(members)} memories: {e}")
                report.clusters_failed += 1
                report.completed = False
                report.reason = "cluster synthesis failed"
                continue
            semantics.append(semantic)
            report.semantic_ids.append(semantic.id)
            report.edges_woven += len(members)

        report.clusters_formed = len(semantics)

        if report.completed:
            batch_semantics = resumed + semantics
            with self.store.transaction():
                report.edges_woven += self._weave_peers(batch_semantics)
                self.graph.decay_all(EDGE_DECAY_FACTOR, EDGE_DECAY_FLOOR)
                report.memories_decayed, report.memories_archived = self._archive(now)
                self._recompute_recency(episodics + batch_semantics, now)
                self.save_checkpoint(max(row.id for row in episodics), now.timestamp())
                self.store.delete_engine_state(PROGRESS_KEY)
            report.reason = report.reason or "completed"

        report.duration_seconds = time.monotonic() - started
        logger.info(
            f"Sleep consolidation: {report.episodics_processed} episodics, "
            f"{report.clusters_formed} semantics, {report.clusters_failed} failed, "
            f"completed={report.completed} in {report.duration_seconds:.2f}s"
        )
        return report

    def _cluster(self, episodics: Sequence[MemoryRow]) -> List[List[MemoryRow]]:
        """Group embedded episodics; clusters under the minimum size are dropped."""
        dimension = self.embedding_provider.dimension
        embedded = [
            row for row in episodics
            if row.embedding is not None and row.embedding.shape[0] == dimension
        ]
        if len(embedded) < len(episodics):
            logger.debug(f"{len(episodics) - len(embedded)} episodics excluded from clustering")
        if not embedded:
            return []

        vectors = to_matrix((row.embedding for row in embedded), dimension)
        k = cluster_count(len(embedded))
        assignments = spherical_kmeans(vectors, k, self.rng)

        groups: List[List[MemoryRow]] = [[] for _ in range(k)]
        for row, index in zip(embedded, assignments):
            groups[int(index)].append(row)
        return [group for group in groups if len(group) >= MIN_CLUSTER_SIZE]

    async def _synthesize(
        self, members: List[MemoryRow], now: datetime, progress: BatchProgress
    ) -> MemoryRow:
        """
        Summarize a cluster and persist it, linked to its members, atomically.

        The batch progress entry is written in the same transaction, so a
        cluster is either fully recorded or not at all.
        """
        summary = await self.summarizer.summarize([m.to_item() for m in members])
        embedding = normalize(as_vector(await self.embedding_provider.embed_one(summary)))
        importance = clamp(
            sum(m.importance for m in members) / len(members) + SEMANTIC_IMPORTANCE_BONUS
        )
        tags = sorted({tag for m in members for tag in m.tags})
        row = MemoryRow(
            id=0,
            kind=MemoryKind.SEMANTIC,
            text=summary,
            embedding=embedding,
            created_at=now,
            updated_at=now,
            importance=importance,
            recency_bias=1.0,
            tags=tags,
            meta={"source": SEMANTIC_SOURCE_TAG, "member_ids": [m.id for m in members]},
        )

        with self.store.transaction():
            row.id = self.store.insert_memory(row)
            if self.on_insert is not None:
                self.on_insert(row.id, embedding, tags)
            # Member links win over any association edge to the same pair
            for member in members:
                self.graph.upsert_edge(row.id, member.id, SEMANTIC_MEMBER_EDGE_WEIGHT)
            updated = BatchProgress(
                progress.checkpoint,
                progress.episodic_ids | {m.id for m in members},
                progress.semantic_ids + [row.id],
            )
            self.store.upsert_engine_state(PROGRESS_KEY, updated.to_json())

        progress.episodic_ids = updated.episodic_ids
        progress.semantic_ids = updated.semantic_ids
        logger.debug(f"Semantic memory {row.id} synthesized from {len(members)} episodics")
        return row

    def _weave_peers(self, semantics: List[MemoryRow]) -> int:
        """Link sufficiently similar new semantics to each other."""
        woven = 0
        for i, left in enumerate(semantics):
            for right in semantics[i + 1:]:
                if cosine(left.embedding, right.embedding) >= SEMANTIC_PEER_COSINE_THRESHOLD:
                    self.graph.upsert_edge(left.id, right.id, SEMANTIC_PEER_EDGE_WEIGHT)
                    woven += 1
        return woven

    def _archive(self, now: datetime) -> Tuple[int, int]:
        """
        Fade old, unimportant episodics.

        Returns:
            (memories whose importance was reduced, memories newly archived)
        """
        cutoff = now - timedelta(days=ARCHIVE_AGE_DAYS)
        faded = archived = 0
        for row in self.store.fetch_memories(kinds=[MemoryKind.EPISODIC]):
            if row.created_at >= cutoff or row.importance >= ARCHIVE_IMPORTANCE_THRESHOLD:
                continue
            importance = row.importance * ARCHIVE_IMPORTANCE_FACTOR
            self.store.update_memory_metadata(row.id, importance=importance)
            faded += 1
            if importance < ARCHIVE_EMBEDDING_DROP_THRESHOLD and not row.is_archived:
                self.store.archive_memory(row.id)
                archived += 1
        return faded, archived

    def _recompute_recency(self, rows: Sequence[MemoryRow], now: datetime) -> None:
        calculator = RecencyBiasCalculator(self.configuration.recency_half_life_days)
        self.store.update_recency_bias(
            [row.id for row in rows],
            [calculator.recency_bias(row.created_at, now) for row in rows],
        )
