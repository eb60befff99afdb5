"""Persistence layer: SQLite memory store, associative graph, procedural rules."""

from hypnos.storage.graph_store import GraphStore, neighbor_id
from hypnos.storage.procedural_rules import ProceduralRuleStore
from hypnos.storage.sqlite_store import SQLiteMemoryStore, canonical_pair

__all__ = [
    "GraphStore",
    "ProceduralRuleStore",
    "SQLiteMemoryStore",
    "canonical_pair",
    "neighbor_id",
]
