"""In-process TTL cache for per-user retrieval work.

Keys are strings; callers scope them per user with a ``"{user_id}|"`` prefix
so that every write for a user can drop that user's entries with
``invalidate_prefix``.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

__all__ = ["TTLCache", "user_key"]

V = TypeVar("V")


def user_key(user_id: str, key: str) -> str:
    """Build a user-scoped cache key."""
    return f"{user_id}|{key}"


class TTLCache(Generic[V]):
    """Bounded mapping whose entries expire after a fixed time-to-live.

    Args:
        ttl_seconds: Lifetime of an entry
        max_entries: Oldest entries are evicted beyond this size
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[V]:
        item = self._entries.get(key)
        if item is None:
            self.misses += 1
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: str, value: V) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``.

        Returns:
            Number of entries removed
        """
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cache entries for {prefix!r}")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }
