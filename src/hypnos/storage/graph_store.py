"""Associative graph over stored memories.

The graph has no state of its own: edges live in the memory store's
``edges`` table, so a memory deletion takes its edges with it.
"""

from typing import Dict, List

from hypnos.core.models import EdgeRow
from hypnos.storage.sqlite_store import SQLiteMemoryStore


class GraphStore:
    """Thin view of the store's undirected, weighted edges."""

    def __init__(self, store: SQLiteMemoryStore):
        self.store = store

    def neighbors(self, memory_id: int) -> List[EdgeRow]:
        """Edges incident to ``memory_id``."""
        return self.store.fetch_edges(memory_id)

    def neighbor_weights(self, memory_id: int, threshold: float = 0.0) -> Dict[int, float]:
        """
        Map each neighbor of ``memory_id`` to its edge weight.

        Edges below ``threshold`` are skipped.
        """
        weights: Dict[int, float] = {}
        for edge in self.neighbors(memory_id):
            if edge.weight < threshold:
                continue
            other = neighbor_id(edge, memory_id)
            weights[other] = max(weights.get(other, 0.0), edge.weight)
        return weights

    def upsert_edge(self, src: int, dst: int, weight: float) -> None:
        self.store.upsert_edge(src, dst, weight)

    def decay_all(self, factor: float, floor: float) -> int:
        """Decay every edge; returns the number of edges touched."""
        return self.store.decay_edges(factor, floor)


def neighbor_id(edge: EdgeRow, memory_id: int) -> int:
    """The endpoint of ``edge`` that is not ``memory_id``."""
    return edge.other(memory_id)
