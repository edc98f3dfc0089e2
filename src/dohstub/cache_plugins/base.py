from __future__ import annotations

from typing import Any, Hashable, Optional


def cache_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a cache plugin class for discovery.

    Inputs:
      - *aliases: Variable number of alias strings.

    Outputs:
      - Callable that applies the aliases to a CachePlugin subclass and returns it.

    Example:
      >>> from dohstub.cache_plugins.base import CachePlugin, cache_aliases
      >>> @cache_aliases('disk', 'file')
      ... class DiskCache(CachePlugin):
      ...     pass
      >>> DiskCache.aliases
      ('disk', 'file')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap


class CachePlugin:
    """Base class for DNS response cache stores.

    Brief:
      CachePlugin is the storage contract behind ResponseCache. Keys are
      opaque hashable tuples (qname, qtype, qclass, client subnet); values are
      packed DNS answers. Subclasses must implement get/set/purge.

    Inputs:
      - None.

    Outputs:
      - CachePlugin instance.

    Notes:
      - min_cache_ttl / max_cache_ttl bound the TTL ResponseCache computes
        for each answer before calling set(). max_cache_ttl None means no cap.
      - Implementations own their thread safety; ResponseCache calls them
        from request threads and from its insert worker concurrently.
    """

    aliases: tuple[str, ...] = ()

    min_cache_ttl: int = 0
    max_cache_ttl: Optional[int] = None

    def get(self, key: Hashable) -> Any | None:
        """Brief: Lookup a cached entry.

        Inputs:
          - key: cache key tuple.

        Outputs:
          - Any | None: Cached value if present and unexpired; otherwise None.
        """

        raise NotImplementedError("CachePlugin.get() must be implemented by a subclass")

    def set(self, key: Hashable, ttl: int, value: Any) -> None:
        """Brief: Store a value under key with a TTL.

        Inputs:
          - key: cache key tuple.
          - ttl: int time-to-live in seconds.
          - value: Cached value.

        Outputs:
          - None.
        """

        raise NotImplementedError("CachePlugin.set() must be implemented by a subclass")

    def purge(self) -> int:
        """Brief: Purge expired entries.

        ResponseCache.close() calls this once the insert worker has stopped.

        Inputs:
          - None.

        Outputs:
          - int: Number of entries removed (best-effort).
        """

        raise NotImplementedError(
            "CachePlugin.purge() must be implemented by a subclass"
        )
