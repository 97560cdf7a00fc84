"""
In-Process Cache Module

Expiring key/value cache used for catalog lookups:
- TTL management (expire after write)
- Single-flight loading: concurrent misses on a key share one load
- Namespaced keys and explicit invalidation
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class CacheManager:
    """
    Async cache with per-key single-flight loading.

    Failed loads are not cached; every caller waiting on the failed load
    receives the same exception.

    Example:
        cache = CacheManager("materialized_views", default_ttl=60)
        view = await cache.get_or_load(("demo", "daily"), load_view)
    """

    def __init__(
        self,
        namespace: str,
        default_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return a live value or None"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any existing entry"""
        self._entries[key] = (self._clock() + (ttl or self.default_ttl), value)

    def delete(self, key: Hashable) -> bool:
        """Drop a key from the cache"""
        return self._entries.pop(key, None) is not None

    def invalidate_all(self) -> int:
        """Drop every entry in this namespace"""
        count = len(self._entries)
        self._entries.clear()
        return count

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Get from cache or load and cache.

        Args:
            key: Cache key
            loader: Async function computing the value on a miss
            ttl: Time-to-live in seconds

        Returns:
            Cached or loaded value
        """
        entry = self._entries.get(key)
        if entry is not None and self._clock() < entry[0]:
            return entry[1]

        task = self._inflight.get(key)
        if task is None:
            logger.debug("Cache miss", namespace=self.namespace, key=str(key))
            task = asyncio.ensure_future(self._load(key, loader, ttl))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task
        # A cancelled caller stops waiting; the shared load keeps running
        return await asyncio.shield(task)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[Any]], ttl: Optional[float]) -> Any:
        try:
            value = await loader()
            self.set(key, value, ttl)
            return value
        finally:
            self._inflight.pop(key, None)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Nobody may be left waiting on a failed load
    if not task.cancelled():
        task.exception()
