"""
Per-key mutual exclusion.

Serializes check-then-write sequences on the same key (a fingerprint or the
connection session) while letting different keys proceed concurrently.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLock:
    """One asyncio.Lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._get_lock(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so the table does not grow with every fingerprint
            if self._waiters[key] == 0:
                del self._waiters[key]
                if not lock.locked():
                    self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock.locked() if lock else False

    def __len__(self) -> int:
        return len(self._locks)
