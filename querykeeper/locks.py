"""
Per-user serialization for querykeeper.

Entitlement checks and thread-handle commits for the same user must never
interleave across await points. UserLocks hands out one asyncio.Lock per
user id and forgets it once nobody holds or waits on it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class UserLocks:
    """Registry of asyncio locks keyed by user id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        """Hold the lock for user_id for the duration of the block."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if self._users[user_id] == 0:
                del self._users[user_id]
                del self._locks[user_id]

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
