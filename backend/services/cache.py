"""
In-memory caches for tokens and resource metadata.

Nothing here is a source of truth: entries only save work that can
always be redone (re-verifying a token, re-fetching metadata).
"""
import time
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Iterable, Optional

from core.config import CACHE_SWEEP_THRESHOLD, CACHE_SWEEP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


# ============================================================================
# TTL Cache
# ============================================================================

class TTLCache:
    """
    LRU key/value cache where every entry carries its own expiry.

    Features:
    - Expired entries are evicted lazily on access
    - Opportunistic sweep once the entry count crosses a threshold
    - Optional hard cap on entries (least recently used evicted first)
    - Injectable clock so tests can move time forward

    The server runs on a single event loop and none of these methods
    await, so no lock is needed.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: Optional[int] = None,
        sweep_threshold: int = CACHE_SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ):
        # key -> (value, expires_at)
        self._entries: "OrderedDict[str, tuple[Any, float]]" = OrderedDict()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._sweep_threshold = sweep_threshold
        self._clock = clock
        self.name = name
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)  # LRU: move to end (most recently used)
        self._hits += 1
        return value

    def put(self, key: str, value: Any, expires_at: Optional[float] = None) -> None:
        """
        Store a value until ``expires_at`` (defaults to now + TTL).

        An entry never outlives the TTL, even if a later expiry is asked for.
        """
        now = self._clock()
        ceiling = now + self._ttl
        expires_at = ceiling if expires_at is None else min(expires_at, ceiling)
        if expires_at <= now:
            self._entries.pop(key, None)
            return

        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)

        if len(self._entries) > self._sweep_threshold:
            self.sweep()

        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                old_key, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted {old_key[:40]} from {self.name}")

    def remove(self, key: str) -> bool:
        """Remove an entry. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry, returning how many were removed."""
        now = self._clock()
        stale = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0
        return {
            "name": self.name,
            "items": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": round(hit_rate, 1),
        }


# ============================================================================
# Background Tasks
# ============================================================================

async def cache_cleanup_task(caches: Iterable[TTLCache], interval: float = CACHE_SWEEP_INTERVAL_SECONDS):
    """
    Background task that periodically sweeps expired entries.
    """
    caches = list(caches)
    while True:
        await asyncio.sleep(interval)
        try:
            for cache in caches:
                removed = cache.sweep()
                if removed:
                    logger.info(f"Swept {removed} expired entries from {cache.name}")

                stats = cache.get_stats()
                if stats["items"] > 0:
                    logger.info(f"{cache.name}: {stats['items']} items, {stats['hit_rate_percent']}% hit rate")
        except Exception as e:
            logger.error(f"Error in cache cleanup task: {e}")
