"""
Simple In-Memory Caching System
TTL cache owned by whoever constructs it - there are no process-wide instances
"""

import time
import logging
from typing import Any, Optional, Dict, Callable

logger = logging.getLogger(__name__)

_MISSING = object()


class SimpleCache:
    """In-memory cache with TTL support and an injectable clock"""

    def __init__(self, default_ttl: float = 300, clock: Optional[Callable[[], float]] = None):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > self._clock():
                self.stats["hits"] += 1
                return entry["value"]
            # Expired
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        now = self._clock()
        self._cache[key] = {
            "value": value,
            "created_at": now,
            "expires_at": now + ttl,
        }
        self.stats["sets"] += 1

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value, calling loader() and caching its result on a miss"""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value, ttl)
        return value

    def clear(self) -> None:
        """Clear all cache entries"""
        cleared_count = len(self._cache)
        self._cache.clear()
        self.stats["deletes"] += cleared_count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }
