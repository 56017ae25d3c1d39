"""
In-process cache for amoCRM list responses.

Entries are keyed by the exact serialized query parameters. An entry is
fresh for ``ttl`` seconds; after that it is kept as a stale fallback the
gateway may serve when its request budget is spent. Entries older than
``max_stale_age`` are evicted on the next ``set`` and never served.

Usage:
    cache = ResponseCache(ttl=300)
    key = cache.make_key(params)

    hit = cache.get_fresh(key)
    if hit is None:
        ...
        cache.set(key, response)
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from relay.observability import get_logger

logger = get_logger(__name__)


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        return ((self.hits + self.stale_hits) / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        self.hits = 0
        self.stale_hits = 0
        self.misses = 0
        self.sets = 0
        self.evictions = 0


class ResponseCache:
    """TTL cache that keeps expired entries around as stale fallbacks."""

    def __init__(
        self,
        ttl: float = 300.0,
        max_stale_age: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_stale_age = max_stale_age
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._stats = CacheStats()

    @staticmethod
    def make_key(params: Dict[str, Any]) -> str:
        """Serialize query parameters into a stable cache key."""
        return json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)

    def get_fresh(self, key: str) -> Optional[Any]:
        """Return the cached value if younger than the TTL."""
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry[0] < self.ttl:
            self._stats.hits += 1
            return entry[1]
        self._stats.misses += 1
        return None

    def get_stale(self, key: str) -> Optional[Any]:
        """Return the cached value unless it is older than ``max_stale_age``."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry[0]
        if age >= self.max_stale_age:
            del self._entries[key]
            self._stats.evictions += 1
            return None
        self._stats.stale_hits += 1
        logger.debug("Serving stale cache entry", extra={"age_s": round(age, 1)})
        return entry[1]

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        self._evict_expired(now)
        self._entries[key] = (now, value)
        self._stats.sets += 1

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (stored, _) in self._entries.items() if now - stored >= self.max_stale_age]
        for k in expired:
            del self._entries[k]
        self._stats.evictions += len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> CacheStats:
        return self._stats
