import asyncio
import time
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Simple in-memory TTL cache"""

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._access_order: List[str] = []
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            now = self._clock()

            if key not in self._cache:
                return None

            entry = self._cache[key]
            if now > entry.expires_at:
                self._drop(key)
                return None

            # Update access order for LRU
            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            ttl = ttl or self.default_ttl
            expires_at = self._clock() + ttl

            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)

            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            # Evict oldest if over max size
            while len(self._cache) > self.max_size:
                oldest_key = self._access_order.pop(0)
                if oldest_key in self._cache:
                    del self._cache[oldest_key]

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._drop(key)

    async def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._cache.items() if now > e.expires_at]
            for key in expired:
                self._drop(key)
            return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._cache), "keys": list(self._access_order)}

    def _drop(self, key: str) -> None:
        self._cache.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)
