"""Per-user write serialisation."""

import asyncio

__all__ = ["UserLocks"]


class UserLocks:
    """Lazily created asyncio.Lock per user.

    Every operation that writes a user's memories (dedup decision and write,
    consolidation, deletion) holds that user's lock. Reads take no lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_user(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)
