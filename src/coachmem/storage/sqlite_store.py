"""SQLite storage layer for Coachmem.

This module provides persistent storage for:
- Memory entries and their embeddings (sqlite-vec serialised float32 blobs)
- Atomic facts owned by memory entries
- Memory relationships (the memory graph)
- Append-only consolidation and access logs
- Graph metric snapshots
- Embedding cache for performance optimization

Entries are never physically deleted by the engine; deactivation is a soft
delete and every consolidation action is written to the consolidation log in
the same transaction as the changes it describes.

Example:
    >>> store = SQLiteStore(Path("~/.coachmem/coachmem.db"))
    >>> store.add_memory(entry)
    >>> matches = store.find_similar("user-1", embedding, limit=5)
"""

import json
import logging
import sqlite3
import struct
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import sqlite_vec

from coachmem.errors import StorageFailure
from coachmem.types.memory import (
    AccessLogEntry,
    AtomicFact,
    ConsolidationLogEntry,
    GraphMetrics,
    MemoryEntry,
    MemoryRelationship,
    RelationshipType,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_MEMORY_COLUMNS = """
    id, user_id, content, category, labels, keywords, importance, confidence,
    embedding, embedding_dims, semantic_hash, created_at, last_accessed,
    access_count, is_active, superseded_by, source_conversation_id,
    updated_at, update_count
"""


class SQLiteStoreError(StorageFailure):
    """Custom exception for SQLite storage errors."""

    pass


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


class SQLiteStore:
    """SQLite storage for memories, facts, relationships and audit logs.

    Args:
        db_path: Path to SQLite database file ("/:memory:" style paths and
                 Path(":memory:") give an ephemeral database).
                 Defaults to ~/.coachmem/coachmem.db

    Attributes:
        db_path: Path to database file
        _conn: SQLite connection
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize SQLite storage.

        Raises:
            SQLiteStoreError: If database initialization fails
        """
        self.db_path = db_path or Path.home() / ".coachmem" / "coachmem.db"

        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            # Connect with optimized settings for concurrent access
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.execute("PRAGMA foreign_keys = ON")
            # WAL mode for better concurrent read performance
            self._conn.execute("PRAGMA journal_mode = WAL")
            # Higher busy timeout (10s) to handle contention gracefully
            self._conn.execute("PRAGMA busy_timeout = 10000")
            self._conn.row_factory = sqlite3.Row

            # Load sqlite-vec for vector distance functions
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)  # Disable for security

            self._init_schema()

        except Exception as e:
            raise SQLiteStoreError(f"Failed to initialize SQLite storage: {e}") from e

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self._conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                labels TEXT NOT NULL DEFAULT '[]',
                keywords TEXT NOT NULL DEFAULT '[]',
                importance REAL NOT NULL DEFAULT 0.5,
                confidence REAL NOT NULL DEFAULT 0.8,

                -- Unit-length float32 embedding (sqlite-vec format)
                embedding BLOB,
                embedding_dims INTEGER,
                semantic_hash TEXT NOT NULL DEFAULT '',

                created_at REAL NOT NULL,
                last_accessed REAL,
                access_count INTEGER NOT NULL DEFAULT 0,

                -- Soft delete and weak back-reference
                is_active INTEGER NOT NULL DEFAULT 1,
                superseded_by TEXT,

                source_conversation_id TEXT,
                updated_at REAL,
                update_count INTEGER NOT NULL DEFAULT 0
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_memories_user_active
            ON memories(user_id, is_active, created_at)
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_memories_hash
            ON memories(user_id, semantic_hash)
        """
        )

        # Facts are owned by their memory entry
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS atomic_facts (
                id TEXT PRIMARY KEY,
                memory_entry_id TEXT NOT NULL
                    REFERENCES memories(id) ON DELETE CASCADE,
                content TEXT NOT NULL,
                normalized_content TEXT NOT NULL,
                fact_type TEXT NOT NULL,
                confidence REAL NOT NULL,
                source_context TEXT,
                created_at REAL NOT NULL,
                UNIQUE(memory_entry_id, normalized_content)
            )
        """
        )

        # Relationships reference memories weakly (no foreign keys)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_relationships (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source_memory_id TEXT NOT NULL,
                target_memory_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                strength REAL NOT NULL,
                confidence REAL NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                reason TEXT,
                created_at REAL NOT NULL,
                UNIQUE(source_memory_id, target_memory_id, relationship_type)
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_relationships_source
            ON memory_relationships(source_memory_id)
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_relationships_target
            ON memory_relationships(target_memory_id)
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_relationships_user
            ON memory_relationships(user_id, is_active)
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS consolidation_log (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                consolidation_type TEXT NOT NULL,
                source_memory_ids TEXT NOT NULL,
                result_memory_id TEXT,
                confidence REAL NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_consolidation_user
            ON consolidation_log(user_id, created_at)
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS access_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                conversation_id TEXT,
                access_type TEXT NOT NULL,
                relevance_score REAL,
                accessed_at REAL NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_access_memory
            ON access_log(memory_id, accessed_at)
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS graph_metrics (
                user_id TEXT PRIMARY KEY,
                total_memories INTEGER NOT NULL,
                total_relationships INTEGER NOT NULL,
                avg_relationships_per_memory REAL NOT NULL,
                contradiction_count INTEGER NOT NULL,
                consolidation_count INTEGER NOT NULL,
                graph_density REAL NOT NULL,
                calculated_at REAL NOT NULL
            )
        """
        )

        # Embedding cache (avoid re-computation)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS embedding_cache (
                content_hash TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dims INTEGER NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (content_hash, provider, model)
            )
        """
        )

        # Schema version table for future migrations
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL
            )
        """
        )
        cursor.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, time.time()),
        )

        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()

    # =========================================================================
    # Serialization
    # =========================================================================

    def _serialize_embedding(self, embedding: list[float]) -> bytes:
        """Serialize embedding to float32 bytes for sqlite-vec."""
        return sqlite_vec.serialize_float32(embedding)

    def _deserialize_embedding(self, data: bytes) -> list[float]:
        """Deserialize embedding from bytes."""
        count = len(data) // 4  # 4 bytes per float
        return list(struct.unpack(f"{count}f", data))

    def _row_to_memory(self, row: sqlite3.Row) -> MemoryEntry:
        """Convert a memories row to a MemoryEntry."""
        return MemoryEntry(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            category=row["category"],
            labels=json.loads(row["labels"]),
            keywords=json.loads(row["keywords"]),
            importance=row["importance"],
            confidence=row["confidence"],
            embedding=(
                self._deserialize_embedding(row["embedding"])
                if row["embedding"] is not None
                else None
            ),
            semantic_hash=row["semantic_hash"],
            created_at=_dt(row["created_at"]),
            last_accessed=_dt(row["last_accessed"]),
            access_count=row["access_count"],
            is_active=bool(row["is_active"]),
            superseded_by=row["superseded_by"],
            source_conversation_id=row["source_conversation_id"],
            updated_at=_dt(row["updated_at"]),
            update_count=row["update_count"],
        )

    def _memory_params(self, entry: MemoryEntry) -> tuple[Any, ...]:
        return (
            entry.id,
            entry.user_id,
            entry.content,
            entry.category.value,
            json.dumps(list(entry.labels)),
            json.dumps(list(entry.keywords)),
            entry.importance,
            entry.confidence,
            self._serialize_embedding(entry.embedding) if entry.embedding else None,
            len(entry.embedding) if entry.embedding else None,
            entry.semantic_hash,
            _ts(entry.created_at),
            _ts(entry.last_accessed),
            entry.access_count,
            int(entry.is_active),
            entry.superseded_by,
            entry.source_conversation_id,
            _ts(entry.updated_at),
            entry.update_count,
        )

    def _row_to_relationship(self, row: sqlite3.Row) -> MemoryRelationship:
        return MemoryRelationship(
            id=row["id"],
            user_id=row["user_id"],
            source_memory_id=row["source_memory_id"],
            target_memory_id=row["target_memory_id"],
            relationship_type=row["relationship_type"],
            strength=row["strength"],
            confidence=row["confidence"],
            is_active=bool(row["is_active"]),
            reason=row["reason"],
            created_at=_dt(row["created_at"]),
        )

    def _row_to_log(self, row: sqlite3.Row) -> ConsolidationLogEntry:
        return ConsolidationLogEntry(
            id=row["id"],
            user_id=row["user_id"],
            consolidation_type=row["consolidation_type"],
            source_memory_ids=json.loads(row["source_memory_ids"]),
            result_memory_id=row["result_memory_id"],
            confidence=row["confidence"],
            reason=row["reason"],
            created_at=_dt(row["created_at"]),
        )

    # =========================================================================
    # Memory Operations
    # =========================================================================

    def _insert_memory(self, cursor: sqlite3.Cursor, entry: MemoryEntry) -> None:
        cursor.execute(
            f"INSERT INTO memories ({_MEMORY_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._memory_params(entry),
        )

    def add_memory(self, entry: MemoryEntry) -> str:
        """Insert a memory entry.

        Args:
            entry: The entry to store (its id is kept)

        Returns:
            Memory ID

        Raises:
            SQLiteStoreError: If memory creation fails
        """
        try:
            cursor = self._conn.cursor()
            self._insert_memory(cursor, entry)
            self._conn.commit()
            return entry.id

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to add memory: {e}") from e

    def get_memory(self, memory_id: str) -> MemoryEntry | None:
        """Get memory by ID (active or not).

        Returns:
            MemoryEntry or None if not found
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?",
                (memory_id,),
            )
            row = cursor.fetchone()
            return self._row_to_memory(row) if row else None

        except Exception as e:
            raise SQLiteStoreError(f"Failed to get memory: {e}") from e

    def update_memory(self, entry: MemoryEntry, log: ConsolidationLogEntry | None = None) -> bool:
        """Overwrite a stored entry with the given state, optionally logging it.

        Returns:
            True if the entry existed and was updated
        """
        try:
            cursor = self._conn.cursor()
            updated = self._update_memory(cursor, entry)
            if updated and log is not None:
                self._insert_log(cursor, log)
            self._conn.commit()
            return updated

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to update memory: {e}") from e

    def _update_memory(self, cursor: sqlite3.Cursor, entry: MemoryEntry) -> bool:
        params = self._memory_params(entry)
        cursor.execute(
            """
            UPDATE memories SET
                user_id = ?, content = ?, category = ?, labels = ?,
                keywords = ?, importance = ?, confidence = ?, embedding = ?,
                embedding_dims = ?, semantic_hash = ?, created_at = ?,
                last_accessed = ?, access_count = ?, is_active = ?,
                superseded_by = ?, source_conversation_id = ?,
                updated_at = ?, update_count = ?
            WHERE id = ?
            """,
            (*params[1:], params[0]),
        )
        return cursor.rowcount > 0

    def list_memories(
        self,
        user_id: str,
        *,
        active_only: bool = True,
        category: str | None = None,
        created_after: datetime | None = None,
        limit: int | None = None,
    ) -> list[MemoryEntry]:
        """List a user's memories ordered by creation time, then id.

        Args:
            user_id: Owning user
            active_only: Exclude soft-deleted and superseded entries
            category: Optional category filter
            created_after: Only entries created after this time
            limit: Maximum number of entries

        Returns:
            List of MemoryEntry
        """
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if active_only:
            conditions.append("is_active = 1")
        if category:
            conditions.append("category = ?")
            params.append(category)
        if created_after is not None:
            conditions.append("created_at > ?")
            params.append(_ts(created_after))

        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at ASC, id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            cursor = self._conn.cursor()
            cursor.execute(sql, params)
            return [self._row_to_memory(row) for row in cursor.fetchall()]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to list memories: {e}") from e

    def count_by_category(self, user_id: str) -> dict[str, int]:
        """Count a user's active memories per category."""
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT category, COUNT(*) AS n FROM memories
                WHERE user_id = ? AND is_active = 1
                GROUP BY category
                """,
                (user_id,),
            )
            return {row["category"]: row["n"] for row in cursor.fetchall()}

        except Exception as e:
            raise SQLiteStoreError(f"Failed to count memories: {e}") from e

    def find_by_semantic_hash(self, user_id: str, semantic_hash: str) -> MemoryEntry | None:
        """Oldest active memory of the user with the given semantic hash."""
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                f"""
                SELECT {_MEMORY_COLUMNS} FROM memories
                WHERE user_id = ? AND semantic_hash = ? AND is_active = 1
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (user_id, semantic_hash),
            )
            row = cursor.fetchone()
            return self._row_to_memory(row) if row else None

        except Exception as e:
            raise SQLiteStoreError(f"Failed to look up semantic hash: {e}") from e

    def find_similar(
        self,
        user_id: str,
        embedding: list[float],
        *,
        created_after: datetime | None = None,
        exclude_ids: Iterable[str] = (),
        limit: int = 20,
    ) -> list[tuple[MemoryEntry, float]]:
        """Active memories ranked by cosine similarity to an embedding.

        Only entries whose embedding has the same dimensionality take part.
        Ties are broken by creation time, then id, so the ranking is stable.

        Returns:
            List of (MemoryEntry, similarity) pairs, most similar first
        """
        conditions = ["user_id = ?", "is_active = 1", "embedding_dims = ?"]
        params: list[Any] = [self._serialize_embedding(embedding), user_id, len(embedding)]
        if created_after is not None:
            conditions.append("created_at > ?")
            params.append(_ts(created_after))
        excluded = list(exclude_ids)
        if excluded:
            conditions.append(f"id NOT IN ({', '.join('?' for _ in excluded)})")
            params.extend(excluded)
        params.append(limit)

        try:
            cursor = self._conn.cursor()
            cursor.execute(
                f"""
                SELECT {_MEMORY_COLUMNS},
                       1.0 - vec_distance_cosine(embedding, ?) AS similarity
                FROM memories
                WHERE {' AND '.join(conditions)}
                ORDER BY similarity DESC, created_at ASC, id ASC
                LIMIT ?
                """,
                params,
            )
            return [
                (self._row_to_memory(row), float(row["similarity"]))
                for row in cursor.fetchall()
            ]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to search similar memories: {e}") from e

    def increment_access(self, memory_id: str, accessed_at: datetime) -> bool:
        """Bump access count and last-accessed time of a memory."""
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed = ?
                WHERE id = ?
                """,
                (_ts(accessed_at), memory_id),
            )
            self._conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to record access: {e}") from e

    def deactivate_memory(self, memory_id: str) -> bool:
        """Soft-delete a memory and retire its relationships.

        Returns:
            True if the memory was active and is now inactive
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                "UPDATE memories SET is_active = 0 WHERE id = ? AND is_active = 1",
                (memory_id,),
            )
            changed = cursor.rowcount > 0
            if changed:
                cursor.execute(
                    """
                    UPDATE memory_relationships SET is_active = 0
                    WHERE is_active = 1
                      AND (source_memory_id = ? OR target_memory_id = ?)
                    """,
                    (memory_id, memory_id),
                )
            self._conn.commit()
            return changed

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to deactivate memory: {e}") from e

    def apply_consolidation(
        self,
        *,
        new_memories: Iterable[MemoryEntry] = (),
        updated_memories: Iterable[MemoryEntry] = (),
        superseded: dict[str, str] | None = None,
        logs: Iterable[ConsolidationLogEntry] = (),
    ) -> None:
        """Apply one consolidation action atomically.

        Args:
            new_memories: Entries to insert (merge results, updates)
            updated_memories: Existing entries to overwrite with the given state
            superseded: Mapping of memory id -> id of the memory replacing it;
                        each listed memory is deactivated, cross-referenced
                        and its relationships retired
            logs: Audit rows describing the action

        Raises:
            SQLiteStoreError: If any part fails (nothing is applied)
        """
        try:
            cursor = self._conn.cursor()
            for entry in new_memories:
                self._insert_memory(cursor, entry)
            for entry in updated_memories:
                self._update_memory(cursor, entry)
            for memory_id, replacement_id in (superseded or {}).items():
                cursor.execute(
                    """
                    UPDATE memories SET is_active = 0, superseded_by = ?
                    WHERE id = ?
                    """,
                    (replacement_id, memory_id),
                )
                cursor.execute(
                    """
                    UPDATE memory_relationships SET is_active = 0
                    WHERE is_active = 1
                      AND (source_memory_id = ? OR target_memory_id = ?)
                    """,
                    (memory_id, memory_id),
                )
            for log in logs:
                self._insert_log(cursor, log)
            self._conn.commit()

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to apply consolidation: {e}") from e

    # =========================================================================
    # Atomic Fact Operations
    # =========================================================================

    def add_fact(self, fact: AtomicFact, normalized_content: str) -> bool:
        """Insert a fact unless the entry already owns one with the same content.

        Returns:
            True if the fact was inserted
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO atomic_facts
                (id, memory_entry_id, content, normalized_content, fact_type,
                 confidence, source_context, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fact.id,
                    fact.memory_entry_id,
                    fact.content,
                    normalized_content,
                    fact.fact_type.value,
                    fact.confidence,
                    fact.source_context,
                    _ts(fact.created_at),
                ),
            )
            self._conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to add fact: {e}") from e

    def list_facts(self, memory_id: str) -> list[AtomicFact]:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT id, memory_entry_id, content, fact_type, confidence,
                       source_context, created_at
                FROM atomic_facts WHERE memory_entry_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (memory_id,),
            )
            return [
                AtomicFact(
                    id=row["id"],
                    memory_entry_id=row["memory_entry_id"],
                    content=row["content"],
                    fact_type=row["fact_type"],
                    confidence=row["confidence"],
                    source_context=row["source_context"],
                    created_at=_dt(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to list facts: {e}") from e

    # =========================================================================
    # Relationship Operations
    # =========================================================================

    def add_relationship(self, relationship: MemoryRelationship) -> bool:
        """Insert a relationship unless the same (source, target, type) exists.

        Returns:
            True if the relationship was inserted
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO memory_relationships
                (id, user_id, source_memory_id, target_memory_id,
                 relationship_type, strength, confidence, is_active, reason,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    relationship.id,
                    relationship.user_id,
                    relationship.source_memory_id,
                    relationship.target_memory_id,
                    relationship.relationship_type.value,
                    relationship.strength,
                    relationship.confidence,
                    int(relationship.is_active),
                    relationship.reason,
                    _ts(relationship.created_at),
                ),
            )
            self._conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to add relationship: {e}") from e

    def list_relationships(
        self,
        user_id: str,
        *,
        memory_id: str | None = None,
        active_only: bool = True,
        relationship_type: RelationshipType | None = None,
    ) -> list[MemoryRelationship]:
        """List a user's relationships, optionally those touching one memory."""
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if memory_id is not None:
            conditions.append("(source_memory_id = ? OR target_memory_id = ?)")
            params.extend([memory_id, memory_id])
        if active_only:
            conditions.append("is_active = 1")
        if relationship_type is not None:
            conditions.append("relationship_type = ?")
            params.append(relationship_type.value)

        try:
            cursor = self._conn.cursor()
            cursor.execute(
                f"""
                SELECT * FROM memory_relationships
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at ASC, id ASC
                """,
                params,
            )
            return [self._row_to_relationship(row) for row in cursor.fetchall()]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to list relationships: {e}") from e

    def deactivate_dangling_relationships(self, user_id: str) -> int:
        """Retire active relationships whose either end is inactive or missing.

        Returns:
            Number of relationships deactivated
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                UPDATE memory_relationships SET is_active = 0
                WHERE user_id = ? AND is_active = 1 AND (
                    NOT EXISTS (
                        SELECT 1 FROM memories m
                        WHERE m.id = source_memory_id AND m.is_active = 1
                    )
                    OR NOT EXISTS (
                        SELECT 1 FROM memories m
                        WHERE m.id = target_memory_id AND m.is_active = 1
                    )
                )
                """,
                (user_id,),
            )
            self._conn.commit()
            return cursor.rowcount

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to retire relationships: {e}") from e

    # =========================================================================
    # Consolidation Log Operations (append-only)
    # =========================================================================

    def _insert_log(self, cursor: sqlite3.Cursor, log: ConsolidationLogEntry) -> None:
        cursor.execute(
            """
            INSERT INTO consolidation_log
            (id, user_id, consolidation_type, source_memory_ids,
             result_memory_id, confidence, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.user_id,
                log.consolidation_type.value,
                json.dumps(log.source_memory_ids),
                log.result_memory_id,
                log.confidence,
                log.reason,
                _ts(log.created_at),
            ),
        )

    def list_consolidation_log(self, user_id: str) -> list[ConsolidationLogEntry]:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT * FROM consolidation_log WHERE user_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (user_id,),
            )
            return [self._row_to_log(row) for row in cursor.fetchall()]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to read consolidation log: {e}") from e

    def count_consolidation_log(self, user_id: str) -> int:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM consolidation_log WHERE user_id = ?", (user_id,)
            )
            return int(cursor.fetchone()[0])

        except Exception as e:
            raise SQLiteStoreError(f"Failed to count consolidation log: {e}") from e

    # =========================================================================
    # Access Log Operations
    # =========================================================================

    def record_access(self, entries: Iterable[AccessLogEntry]) -> int:
        """Append access log rows and bump the accessed memories' counters.

        Returns:
            Number of rows written
        """
        written = 0
        try:
            cursor = self._conn.cursor()
            for entry in entries:
                cursor.execute(
                    """
                    INSERT INTO access_log
                    (memory_id, user_id, conversation_id, access_type,
                     relevance_score, accessed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.memory_id,
                        entry.user_id,
                        entry.conversation_id,
                        entry.access_type,
                        entry.relevance_score,
                        _ts(entry.accessed_at),
                    ),
                )
                cursor.execute(
                    """
                    UPDATE memories
                    SET access_count = access_count + 1, last_accessed = ?
                    WHERE id = ?
                    """,
                    (_ts(entry.accessed_at), entry.memory_id),
                )
                written += 1
            self._conn.commit()
            return written

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to record memory usage: {e}") from e

    def count_recent_accesses(self, user_id: str, since: datetime) -> dict[str, int]:
        """Access-log rows per memory since the given time."""
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT memory_id, COUNT(*) AS n FROM access_log
                WHERE user_id = ? AND accessed_at >= ?
                GROUP BY memory_id
                """,
                (user_id, _ts(since)),
            )
            return {row["memory_id"]: row["n"] for row in cursor.fetchall()}

        except Exception as e:
            raise SQLiteStoreError(f"Failed to count accesses: {e}") from e

    def list_access_log(self, memory_id: str) -> list[AccessLogEntry]:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT * FROM access_log WHERE memory_id = ?
                ORDER BY accessed_at ASC, id ASC
                """,
                (memory_id,),
            )
            return [
                AccessLogEntry(
                    memory_id=row["memory_id"],
                    user_id=row["user_id"],
                    conversation_id=row["conversation_id"],
                    access_type=row["access_type"],
                    relevance_score=row["relevance_score"],
                    accessed_at=_dt(row["accessed_at"]),
                )
                for row in cursor.fetchall()
            ]

        except Exception as e:
            raise SQLiteStoreError(f"Failed to read access log: {e}") from e

    # =========================================================================
    # Graph Metrics Operations
    # =========================================================================

    def save_graph_metrics(self, metrics: GraphMetrics) -> None:
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO graph_metrics
                (user_id, total_memories, total_relationships,
                 avg_relationships_per_memory, contradiction_count,
                 consolidation_count, graph_density, calculated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metrics.user_id,
                    metrics.total_memories,
                    metrics.total_relationships,
                    metrics.avg_relationships_per_memory,
                    metrics.contradiction_count,
                    metrics.consolidation_count,
                    metrics.graph_density,
                    _ts(metrics.calculated_at),
                ),
            )
            self._conn.commit()

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to save graph metrics: {e}") from e

    def get_graph_metrics(self, user_id: str) -> GraphMetrics | None:
        try:
            cursor = self._conn.cursor()
            cursor.execute("SELECT * FROM graph_metrics WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            if not row:
                return None
            data = dict(row)
            data["calculated_at"] = _dt(data["calculated_at"])
            return GraphMetrics(**data)

        except Exception as e:
            raise SQLiteStoreError(f"Failed to get graph metrics: {e}") from e

    # =========================================================================
    # Embedding Cache Operations
    # =========================================================================

    def get_cached_embedding(
        self, content_hash: str, provider: str, model: str
    ) -> list[float] | None:
        """Retrieve cached embedding.

        Args:
            content_hash: SHA256 hash of content
            provider: Embedding provider name (e.g., 'ollama', 'openai')
            model: Model name

        Returns:
            Cached embedding or None if not found
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                SELECT embedding
                FROM embedding_cache
                WHERE content_hash = ? AND provider = ? AND model = ?
                """,
                (content_hash, provider, model),
            )

            row = cursor.fetchone()
            if not row:
                return None

            return self._deserialize_embedding(row["embedding"])

        except Exception as e:
            raise SQLiteStoreError(f"Failed to get cached embedding: {e}") from e

    def cache_embedding(
        self, content_hash: str, provider: str, model: str, embedding: list[float]
    ) -> None:
        """Store embedding in cache.

        Raises:
            SQLiteStoreError: If caching fails
        """
        try:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO embedding_cache
                (content_hash, provider, model, embedding, dims, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    content_hash,
                    provider,
                    model,
                    self._serialize_embedding(embedding),
                    len(embedding),
                    time.time(),
                ),
            )
            self._conn.commit()

        except Exception as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to cache embedding: {e}") from e
