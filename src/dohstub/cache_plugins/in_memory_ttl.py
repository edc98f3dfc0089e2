from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Hashable, Optional, Tuple

from cachetools import TLRUCache
from pydantic import BaseModel, ConfigDict, Field

from .base import CachePlugin, cache_aliases

logger = logging.getLogger(__name__)


class InMemoryTTLCacheConfig(BaseModel):
    """Brief: Typed configuration model for InMemoryTTLCache.

    Inputs:
      - maxsize: Upper bound on stored answers (>= 1). When full, the least
        recently used live entry is evicted.
      - min_cache_ttl: Non-negative TTL floor in seconds applied by
        ResponseCache when caching answers.
      - max_cache_ttl: Optional TTL cap in seconds; null disables the cap.

    Outputs:
      - InMemoryTTLCacheConfig instance with normalized field types.
    """

    model_config = ConfigDict(extra="forbid")

    maxsize: int = Field(default=4096, ge=1)
    min_cache_ttl: int = Field(default=0, ge=0)
    max_cache_ttl: Optional[int] = Field(default=86400, ge=0)


def _entry_expiry(_key: Hashable, value: Tuple[int, Any], now: float) -> float:
    ttl, _data = value
    return now + ttl


@cache_aliases("in_memory_ttl", "memory", "ttl")
class InMemoryTTLCache(CachePlugin):
    """In-memory TTL cache plugin.

    Brief:
      Default CachePlugin implementation backed by a cachetools TLRUCache so
      every entry carries its own TTL. Operations are serialized with an
      RLock because cachetools caches are not thread-safe.

    Inputs:
      - timer: Optional monotonic clock, overridable in tests.
      - **config: Fields of InMemoryTTLCacheConfig.

    Outputs:
      - InMemoryTTLCache instance.

    Example:
      >>> c = InMemoryTTLCache(maxsize=10)
      >>> c.set(("example.com.", 1, 1, "192.0.2.0/24"), 60, b"wire")
      >>> c.get(("example.com.", 1, 1, "192.0.2.0/24"))
      b'wire'
    """

    def __init__(
        self, *, timer: Callable[[], float] = time.monotonic, **config: object
    ) -> None:
        cfg = InMemoryTTLCacheConfig(**config)
        self.maxsize = cfg.maxsize
        self.min_cache_ttl = cfg.min_cache_ttl
        self.max_cache_ttl = cfg.max_cache_ttl
        self._cache: TLRUCache = TLRUCache(
            maxsize=cfg.maxsize, ttu=_entry_expiry, timer=timer
        )
        self._lock = threading.RLock()

        self.calls_total: int = 0
        self.cache_hits: int = 0
        self.cache_misses: int = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get(self, key: Hashable) -> Any | None:
        """Brief: Return cached value when present and unexpired.

        Inputs:
          - key: cache key tuple.

        Outputs:
          - Any | None: Cached value, or None.
        """

        with self._lock:
            self.calls_total += 1
            entry = self._cache.get(key)
            if entry is None:
                self.cache_misses += 1
                return None
            self.cache_hits += 1
            return entry[1]

    def set(self, key: Hashable, ttl: int, value: Any) -> None:
        """Brief: Store a cached value; a non-positive TTL stores nothing.

        Inputs:
          - key: cache key tuple.
          - ttl: int time-to-live seconds.
          - value: cached payload.

        Outputs:
          - None.
        """

        ttl_int = int(ttl)
        if ttl_int <= 0:
            return
        with self._lock:
            self._cache[key] = (ttl_int, value)

    def purge(self) -> int:
        """Brief: Purge expired items from the cache.

        Inputs:
          - None.

        Outputs:
          - int: Number of removed entries.
        """

        with self._lock:
            removed = self._cache.expire() or []
        if removed:
            logger.debug("purged %d expired cache entries", len(removed))
        return len(removed)
