"""
Response Cache

TTL-bounded, size-bounded cache for parsed API responses:
- Per-entry time-to-live
- Least-recently-used eviction once the size bound is reached
- Lazy expiry on read plus optional periodic cleanup
- Hit/miss statistics
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar('T')


@dataclass
class CacheEntry:
    """Cache entry with metadata"""
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float]
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class LRUCache(Generic[T]):
    """Ordered mapping evicting the least recently used key"""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._cache: "OrderedDict[str, T]" = OrderedDict()

    def get(self, key: str) -> Optional[T]:
        """Get item and mark it most recently used"""
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]
        return None

    def put(self, key: str, value: T) -> Optional[str]:
        """Put item; returns the evicted key, if any"""
        evicted = None
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.max_size:
            evicted, _ = self._cache.popitem(last=False)
        self._cache[key] = value
        return evicted

    def remove(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)

    def items(self) -> List[tuple]:
        return list(self._cache.items())


class ResponseCache:
    """Async-facing TTL cache for request results"""

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: LRUCache[CacheEntry] = LRUCache(max_entries)
        self._stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "evictions": 0,
            "expired": 0,
        }
        self._cleanup_task: Optional[asyncio.Task] = None

    async def get(self, key: str) -> Optional[Any]:
        """Get a live value, or None on miss/expiry"""
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None

        if entry.is_expired(self._clock()):
            self._entries.remove(key)
            self._stats["expired"] += 1
            self._stats["misses"] += 1
            return None

        entry.access_count += 1
        self._stats["hits"] += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        """Store a value; a ttl of 0 or less means the entry is never served"""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return

        now = self._clock()
        evicted = self._entries.put(key, CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
        ))
        self._stats["writes"] += 1
        if evicted is not None:
            self._stats["evictions"] += 1
            logger.debug("Cache entry evicted", key=evicted[:80])

    async def delete(self, key: str) -> bool:
        return self._entries.remove(key)

    async def clear(self):
        self._entries.clear()

    async def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed"""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.remove(key)
        self._stats["expired"] += len(expired)
        if expired:
            logger.info("Expired cache entries removed", count=len(expired))
        return len(expired)

    def start_background_cleanup(self, interval_seconds: float = 3600.0):
        """Periodically purge expired entries"""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._background_cleanup(interval_seconds)
            )

    async def _background_cleanup(self, interval_seconds: float):
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                await self.cleanup_expired()
            except asyncio.CancelledError:
                break

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "entries": self._entries.size(),
            "max_entries": self._entries.max_size,
            "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
        }

    async def shutdown(self):
        """Stop background cleanup"""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
