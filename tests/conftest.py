"""Pytest configuration and shared fixtures for coachmem tests.

This module provides reusable fixtures for testing:
- settings: Offline settings (in-memory store, heuristic classification, no embeddings)
- store: In-memory SQLiteStore with sqlite-vec loaded
- clock: Controllable clock shared by the pipeline components
- fake_embedder: Embedding provider answering from a fixed vector book
- env_setup: (autouse) Clears COACHMEM_* environment variables

Usage:
    def test_something(store, clock):
        # Tests run against an ephemeral database and a frozen clock
        pass
"""

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from coachmem.config import CoachmemSettings
from coachmem.embedding import EmbeddingError
from coachmem.storage import SQLiteStore
from coachmem.types.memory import MemoryCategory, MemoryEntry

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def env_setup(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate tests from COACHMEM_* variables and any .env file."""
    for key in list(os.environ):
        if key.startswith("COACHMEM_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class Clock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmbedder:
    """EmbeddingProvider answering from a fixed text -> vector book.

    Unknown texts raise EmbeddingError, so callers fall back to lexical
    matching exactly as with an unavailable backend.
    """

    name = "fake"
    model = "fake-3d"

    def __init__(self, book: dict[str, list[float]] | None = None) -> None:
        self.book = dict(book or {})
        self.calls: list[str] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self._lookup(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._lookup(text)

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def _lookup(self, text: str) -> list[float]:
        self.calls.append(text)
        if text not in self.book:
            raise EmbeddingError(f"no vector for {text!r}")
        return self.book[text]


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> CoachmemSettings:
    """Offline settings with fast retries."""
    return CoachmemSettings(
        sqlite_path=":memory:",
        embedding_backend="none",
        classification_backend="heuristic",
        storage_retries=0,
        retry_base_delay=0.01,
        retry_max_delay=0.02,
        worker_count=2,
    )


@pytest.fixture
def store() -> Generator[SQLiteStore, None, None]:
    """Provide in-memory SQLiteStore instance for testing."""
    s = SQLiteStore(Path(":memory:"))
    yield s
    s.close()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_entry(clock: Clock):
    """Factory for MemoryEntry objects stamped with the test clock."""

    def _make(
        content: str,
        category: MemoryCategory | str = MemoryCategory.PREFERENCES,
        user_id: str = "u1",
        **kwargs,
    ) -> MemoryEntry:
        from coachmem.memory.similarity import compute_semantic_hash

        kwargs.setdefault("created_at", clock())
        embedding = kwargs.get("embedding")
        kwargs.setdefault("semantic_hash", compute_semantic_hash(embedding, content))
        return MemoryEntry(
            user_id=user_id,
            content=content,
            category=MemoryCategory(category),
            **kwargs,
        )

    return _make
