"""SQLite-backed persistence for memories, association edges and engine state.

The store is the single source of truth: every write in the engine goes
through it, and multi-step writes are wrapped in :meth:`transaction` so a
reader never observes a half-applied batch.

Layout:
- memories: one row per memory, embedding as a raw float32 BLOB,
  tags/meta as JSON text (NULL when empty)
- edges: undirected associations keyed by the canonical (src_id, dst_id)
  pair with src_id <= dst_id, cascading on memory deletion
- engine_state: flat key/value table (consolidation checkpoint)
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from loguru import logger

from hypnos.core.models import EdgeRow, MemoryKind, MemoryRow, Meta
from hypnos.core.scoring import clamp
from hypnos.core.vector_math import blob_to_embedding, embedding_to_blob
from hypnos.utils.exceptions import StorageError

if TYPE_CHECKING:
    from hypnos.config.settings import StorageSettings

SCHEMA_VERSION = 1

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds
_ID_CHUNK_SIZE = 500

_MEMORY_COLUMNS = (
    "id, kind, text, embedding, created_at, updated_at, last_accessed_at, "
    "importance, sentiment, recency_bias, tags, meta"
)


def canonical_pair(src: int, dst: int) -> Tuple[int, int]:
    """Order an edge's endpoints so the smaller id comes first."""
    return (src, dst) if src <= dst else (dst, src)


def _encode_tags(tags: Sequence[str]) -> Optional[str]:
    unique = sorted(set(tags))
    return json.dumps(unique) if unique else None


def _decode_tags(raw: Optional[str]) -> List[str]:
    """Parse stored tags, falling back to a comma split for non-JSON strings."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, list) and all(isinstance(t, str) for t in parsed):
        return parsed
    return [part for part in raw.split(",") if part]


def _encode_meta(meta: Meta) -> Optional[str]:
    return json.dumps(meta, sort_keys=True) if meta else None


def _decode_meta(raw: Optional[str]) -> Meta:
    """Parse stored metadata; anything but a JSON object degrades to {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _chunks(values: Sequence[int], size: int = _ID_CHUNK_SIZE) -> Iterator[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class SQLiteMemoryStore:
    """
    Relational memory store on SQLite.

    Not thread-safe on its own: the engine serializes every call behind its
    single-writer lock.
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        settings: Optional[StorageSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Open (and migrate) the store.

        Args:
            db_path: Database file, or ":memory:" (overrides settings)
            settings: StorageSettings instance (provides defaults)
            clock: Source of "now" for updated_at bookkeeping
        """
        if settings is None and db_path is None:
            from hypnos.config.settings import StorageSettings
            settings = StorageSettings()

        _db_path = str(db_path) if db_path is not None else settings.db_path
        if _db_path != ":memory:":
            Path(_db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = _db_path
        self._clock = clock or datetime.now
        self._tx_depth = 0

        try:
            self._conn = self._connect()
            self._init_schema()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open memory store at {_db_path}: {e}") from e

        logger.info(f"Memory store opened at {_db_path}")

    def _connect(self) -> sqlite3.Connection:
        """Create the connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30)
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=1000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        """Create tables and indices if they don't exist."""
        c = self._conn

        with self.transaction():
            c.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                )
            """)
            row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row[0] > SCHEMA_VERSION:
                raise StorageError(
                    f"Database schema v{row[0]} is newer than supported v{SCHEMA_VERSION}"
                )

            c.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    last_accessed_at REAL,
                    importance REAL NOT NULL DEFAULT 0.0,
                    sentiment REAL,
                    recency_bias REAL NOT NULL DEFAULT 1.0,
                    tags TEXT,
                    meta TEXT
                )
            """)
            for col in ("kind", "updated_at", "importance"):
                c.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_memories_{col}
                    ON memories({col})
                """)

            c.execute("""
                CREATE TABLE IF NOT EXISTS edges (
                    src_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                    dst_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                    weight REAL NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (src_id, dst_id),
                    CHECK (src_id <= dst_id)
                )
            """)
            for col in ("src_id", "dst_id"):
                c.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_edges_{col}
                    ON edges({col})
                """)

            c.execute("""
                CREATE TABLE IF NOT EXISTS engine_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()
        logger.debug(f"Memory store at {self.db_path} closed")

    def _now(self) -> float:
        return self._clock().timestamp()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run a block of writes atomically.

        Re-entrant: a nested block joins the outermost transaction, and any
        exception rolls back the whole outer block.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        self._conn.execute("BEGIN")
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            logger.debug("Transaction rolled back")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    # -------------------------------------------------------------------------
    # Memories
    # -------------------------------------------------------------------------

    def insert_memory(self, row: MemoryRow) -> int:
        """
        Insert a memory; ``row.id`` is ignored and a new id is assigned.

        Returns:
            The store-assigned id
        """
        cursor = self._conn.execute(
            """INSERT INTO memories
               (kind, text, embedding, created_at, updated_at, last_accessed_at,
                importance, sentiment, recency_bias, tags, meta)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                row.kind.value,
                row.text,
                embedding_to_blob(row.embedding),
                row.created_at.timestamp(),
                row.updated_at.timestamp(),
                row.last_accessed_at.timestamp() if row.last_accessed_at else None,
                clamp(row.importance),
                row.sentiment,
                row.recency_bias,
                _encode_tags(row.tags),
                _encode_meta(row.meta),
            ),
        )
        memory_id = int(cursor.lastrowid)
        logger.debug(f"Inserted {row.kind.value} memory {memory_id}")
        return memory_id

    def fetch_memories(
        self,
        kinds: Optional[Sequence[MemoryKind]] = None,
        updated_after: Optional[datetime] = None,
        ids: Optional[Sequence[int]] = None,
        after_id: Optional[int] = None,
    ) -> List[MemoryRow]:
        """
        Fetch memories; all given filters are combined with AND.

        Args:
            kinds: Restrict to these kinds
            updated_after: Only rows with updated_at strictly after this time
            ids: Only these ids (an empty list matches nothing)
            after_id: Only rows with id strictly greater than this

        Returns:
            Rows ordered by id
        """
        if ids is not None:
            unique_ids = sorted(set(ids))
            rows: List[MemoryRow] = []
            for chunk in _chunks(unique_ids):
                rows.extend(self._select(kinds, updated_after, chunk, after_id))
            return rows
        return self._select(kinds, updated_after, None, after_id)

    def _select(
        self,
        kinds: Optional[Sequence[MemoryKind]],
        updated_after: Optional[datetime],
        ids: Optional[Sequence[int]],
        after_id: Optional[int],
    ) -> List[MemoryRow]:
        clauses: List[str] = []
        params: List[object] = []
        if kinds is not None:
            if not kinds:
                return []
            clauses.append(f"kind IN ({', '.join('?' * len(kinds))})")
            params.extend(k.value for k in kinds)
        if updated_after is not None:
            clauses.append("updated_at > ?")
            params.append(updated_after.timestamp())
        if ids is not None:
            if not ids:
                return []
            clauses.append(f"id IN ({', '.join('?' * len(ids))})")
            params.extend(ids)
        if after_id is not None:
            clauses.append("id > ?")
            params.append(after_id)

        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [self._map_row(r) for r in self._conn.execute(sql, params)]

    def fetch_memory(self, memory_id: int) -> Optional[MemoryRow]:
        """Fetch a single memory by id."""
        rows = self.fetch_memories(ids=[memory_id])
        return rows[0] if rows else None

    def update_last_accessed(self, ids: Sequence[int], when: datetime) -> None:
        """Stamp last_accessed_at (and updated_at) for a batch of memories."""
        timestamp = when.timestamp()
        with self.transaction():
            self._conn.executemany(
                "UPDATE memories SET last_accessed_at = ?, updated_at = ? WHERE id = ?",
                [(timestamp, timestamp, memory_id) for memory_id in ids],
            )

    def update_recency_bias(self, ids: Sequence[int], values: Sequence[float]) -> None:
        """Set recency_bias per id, pairing ``ids`` and ``values`` positionally."""
        if len(ids) != len(values):
            logger.warning(
                f"Recency update skipped: {len(ids)} ids but {len(values)} values"
            )
            return
        now = self._now()
        with self.transaction():
            self._conn.executemany(
                "UPDATE memories SET recency_bias = ?, updated_at = ? WHERE id = ?",
                [(value, now, memory_id) for memory_id, value in zip(ids, values)],
            )

    def multiply_importance(self, ids: Sequence[int], factor: float) -> None:
        """Scale importance for a batch of memories, clamping to [0, 1]."""
        now = self._now()
        with self.transaction():
            self._conn.executemany(
                """UPDATE memories
                   SET importance = MAX(0.0, MIN(1.0, importance * ?)), updated_at = ?
                   WHERE id = ?""",
                [(factor, now, memory_id) for memory_id in ids],
            )

    def archive_memory(self, memory_id: int) -> None:
        """Drop a memory's embedding so it leaves similarity retrieval."""
        self._conn.execute(
            "UPDATE memories SET embedding = NULL, updated_at = ? WHERE id = ?",
            (self._now(), memory_id),
        )
        logger.debug(f"Archived memory {memory_id}")

    def update_memory_metadata(
        self,
        memory_id: int,
        importance: Optional[float] = None,
        recency_bias: Optional[float] = None,
    ) -> None:
        """Update importance and/or recency bias; a no-op when both are None."""
        setters: List[str] = []
        params: List[object] = []
        if importance is not None:
            setters.append("importance = ?")
            params.append(clamp(importance))
        if recency_bias is not None:
            setters.append("recency_bias = ?")
            params.append(recency_bias)
        if not setters:
            return
        setters.append("updated_at = ?")
        params.append(self._now())
        params.append(memory_id)
        self._conn.execute(
            f"UPDATE memories SET {', '.join(setters)} WHERE id = ?",
            params,
        )

    def update_procedural_memory(
        self,
        memory_id: int,
        tags: Sequence[str],
        importance: float,
        recency_bias: float,
        embedding=None,
    ) -> None:
        """Refresh a procedural rule in place; the embedding is kept when None."""
        setters = ["importance = ?", "recency_bias = ?", "updated_at = ?", "tags = ?"]
        params: List[object] = [clamp(importance), recency_bias, self._now(), _encode_tags(tags)]
        if embedding is not None:
            setters.append("embedding = ?")
            params.append(embedding_to_blob(embedding))
        params.append(memory_id)
        self._conn.execute(
            f"UPDATE memories SET {', '.join(setters)} WHERE id = ?",
            params,
        )

    def delete_memory(self, memory_id: int) -> bool:
        """
        Physically delete a memory; its edges go with it (ON DELETE CASCADE).

        Returns:
            True if a row was deleted
        """
        cursor = self._conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Deleted memory {memory_id}")
        return deleted

    def count_memories(self, kind: Optional[MemoryKind] = None, archived: Optional[bool] = None) -> int:
        """Count memories, optionally filtered by kind and archival state."""
        clauses: List[str] = []
        params: List[object] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if archived is True:
            clauses.append("embedding IS NULL")
        elif archived is False:
            clauses.append("embedding IS NOT NULL")
        sql = "SELECT COUNT(*) FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return int(self._conn.execute(sql, params).fetchone()[0])

    # -------------------------------------------------------------------------
    # Engine state
    # -------------------------------------------------------------------------

    def upsert_engine_state(self, key: str, value: str) -> None:
        self._conn.execute(
            """INSERT INTO engine_state (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, value),
        )

    def read_engine_state(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM engine_state WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def delete_engine_state(self, key: str) -> None:
        self._conn.execute("DELETE FROM engine_state WHERE key = ?", (key,))

    # -------------------------------------------------------------------------
    # Edges
    # -------------------------------------------------------------------------

    def fetch_edges(self, memory_id: int) -> List[EdgeRow]:
        """All edges touching ``memory_id`` on either endpoint."""
        cursor = self._conn.execute(
            """SELECT src_id, dst_id, weight, created_at, updated_at
               FROM edges WHERE src_id = ? OR dst_id = ?""",
            (memory_id, memory_id),
        )
        return [self._map_edge(r) for r in cursor]

    def fetch_all_edges(self) -> List[EdgeRow]:
        cursor = self._conn.execute(
            "SELECT src_id, dst_id, weight, created_at, updated_at FROM edges ORDER BY src_id, dst_id"
        )
        return [self._map_edge(r) for r in cursor]

    def count_edges(self) -> int:
        return int(self._conn.execute("SELECT COUNT(*) FROM edges").fetchone()[0])

    def upsert_edge(self, src: int, dst: int, weight: float) -> None:
        """
        Insert or update the edge between ``src`` and ``dst``.

        Endpoints are canonicalized, so (a, b) and (b, a) address the same
        row. Both endpoints must exist (foreign keys are enforced).

        Raises:
            ValueError: If ``src == dst``
            sqlite3.IntegrityError: If either endpoint does not exist
        """
        if src == dst:
            raise ValueError(f"Refusing self-loop edge on memory {src}")
        low, high = canonical_pair(src, dst)
        now = self._now()
        self._conn.execute(
            """INSERT INTO edges (src_id, dst_id, weight, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(src_id, dst_id)
               DO UPDATE SET weight = excluded.weight, updated_at = excluded.updated_at""",
            (low, high, weight, now, now),
        )

    def decay_edges(self, factor: float, floor: float) -> int:
        """
        Multiply every edge weight by ``factor``, never going below ``floor``.

        Returns:
            Number of edges touched
        """
        cursor = self._conn.execute(
            "UPDATE edges SET weight = MAX(?, weight * ?), updated_at = ?",
            (floor, factor, self._now()),
        )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _map_row(self, r: Tuple) -> MemoryRow:
        (memory_id, kind, text, embedding, created_at, updated_at, last_accessed_at,
         importance, sentiment, recency_bias, tags, meta) = r
        try:
            memory_kind = MemoryKind(kind)
        except ValueError:
            logger.warning(f"Memory {memory_id} has unknown kind {kind!r}, reading as episodic")
            memory_kind = MemoryKind.EPISODIC
        return MemoryRow(
            id=int(memory_id),
            kind=memory_kind,
            text=text,
            embedding=blob_to_embedding(embedding),
            created_at=datetime.fromtimestamp(created_at),
            updated_at=datetime.fromtimestamp(updated_at),
            last_accessed_at=(
                datetime.fromtimestamp(last_accessed_at) if last_accessed_at is not None else None
            ),
            importance=float(importance),
            sentiment=sentiment,
            recency_bias=float(recency_bias),
            tags=_decode_tags(tags),
            meta=_decode_meta(meta),
        )

    @staticmethod
    def _map_edge(r: Tuple) -> EdgeRow:
        src_id, dst_id, weight, created_at, updated_at = r
        return EdgeRow(
            src_id=int(src_id),
            dst_id=int(dst_id),
            weight=float(weight),
            created_at=datetime.fromtimestamp(created_at),
            updated_at=datetime.fromtimestamp(updated_at),
        )

    def stats(self) -> Dict[str, int]:
        """Row counts per kind plus edge and archive totals."""
        counts = {kind.value: self.count_memories(kind) for kind in MemoryKind}
        counts["archived"] = self.count_memories(archived=True)
        counts["total"] = self.count_memories()
        counts["edges"] = self.count_edges()
        return counts
