"""Storage layer for Coachmem.

This module provides persistent storage using SQLite with:
- sqlite-vec for embedding serialisation and cosine similarity in SQL
- Memory entries, atomic facts and the relationship graph
- Append-only consolidation and access logs
- Graph metric snapshots
- Embedding cache for performance optimization

Example:
    >>> from coachmem.storage import SQLiteStore
    >>> store = SQLiteStore(Path(":memory:"))
    >>> store.add_memory(entry)
    >>> store.find_similar("user-1", embedding, limit=5)
"""

from coachmem.storage.sqlite_store import SQLiteStore, SQLiteStoreError

__all__ = [
    "SQLiteStore",
    "SQLiteStoreError",
]
