"""Tests for the TTL cache."""

import pytest

from coachmem.cache import TTLCache, user_key


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker() -> FakeMonotonic:
    return FakeMonotonic()


class TestTTLCache:
    """Test expiry, eviction and invalidation."""

    def test_hit_and_miss_are_counted(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[str] = TTLCache(ttl_seconds=60, clock=ticker)
        cache.set("a", "value")

        assert cache.get("a") == "value"
        assert cache.get("b") is None
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1, "ttl_seconds": 60}

    def test_entries_expire(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=60, clock=ticker)
        cache.set("a", 1)

        ticker.now += 59.9
        assert cache.get("a") == 1
        ticker.now += 0.1
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_set_refreshes_expiry(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=10, clock=ticker)
        cache.set("a", 1)
        ticker.now += 8
        cache.set("a", 2)
        ticker.now += 8

        assert cache.get("a") == 2

    def test_oldest_entries_are_evicted(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=60, max_entries=2, clock=ticker)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_invalidate_prefix_is_scoped_per_user(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=60, clock=ticker)
        cache.set(user_key("u1", "q1"), 1)
        cache.set(user_key("u1", "q2"), 2)
        cache.set(user_key("u10", "q1"), 3)

        assert cache.invalidate_prefix(user_key("u1", "")) == 2
        assert cache.get(user_key("u10", "q1")) == 3
        assert cache.invalidate_prefix("nobody|") == 0

    def test_invalidate_and_clear(self, ticker: FakeMonotonic) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=60, clock=ticker)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        cache.clear()
        assert len(cache) == 0
