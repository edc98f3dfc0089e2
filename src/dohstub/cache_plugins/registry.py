"""Cache plugin selection from the ``cache`` config section.

Brief:
  Maps the cache section onto a CachePlugin instance, or None when caching
  is turned off. Bundled stores are looked up by alias; a dotted import path
  loads any other CachePlugin subclass.
"""

from __future__ import annotations

import difflib
import importlib
import inspect
from typing import Any, Dict, Optional, Type

from .base import CachePlugin
from .in_memory_ttl import InMemoryTTLCache

DEFAULT_CACHE_MODULE = "in_memory_ttl"

# Module names that turn caching off instead of naming a store.
DISABLED_ALIASES = frozenset({"none", "off", "disabled", "no_cache", "null"})

_BUNDLED = (InMemoryTTLCache,)


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _aliases() -> Dict[str, Type[CachePlugin]]:
    return {_normalize(a): cls for cls in _BUNDLED for a in cls.aliases}


def get_cache_plugin_class(identifier: str) -> Type[CachePlugin]:
    """Brief: Resolve identifier to a cache plugin class.

    Inputs:
      - identifier: Dotted import path or alias of a bundled store.

    Outputs:
      - CachePlugin subclass.

    Raises:
      - KeyError: unknown alias (message lists close matches).
      - TypeError: dotted path names something that is not a CachePlugin.
    """

    ident = str(identifier).strip()
    if "." in ident:
        modname, _, classname = ident.rpartition(".")
        cls = getattr(importlib.import_module(modname), classname)
        if not (inspect.isclass(cls) and issubclass(cls, CachePlugin)):
            raise TypeError(f"{identifier} is not a CachePlugin subclass")
        return cls

    reg = _aliases()
    key = _normalize(ident)
    try:
        return reg[key]
    except KeyError:
        known = sorted(reg) + sorted(DISABLED_ALIASES)
        suggestions = difflib.get_close_matches(key, known, n=3)
        raise KeyError(
            f"Unknown cache plugin alias '{identifier}'. "
            f"Known aliases: {', '.join(known)}. Suggestions: {suggestions}"
        )


def load_cache_plugin(raw: Any) -> Optional[CachePlugin]:
    """Brief: Build the cache store described by the ``cache`` section.

    Inputs:
      - raw: Cache section value. Supported forms:
        - None / False: caching off.
        - True: default in-memory TTL store.
        - str: alias or dotted import path.
        - dict: {"enabled", "module", "config", "handoff_timeout_ms"}; an
          omitted module means the default store, a null one means off.

    Outputs:
      - CachePlugin instance, or None when caching is disabled.

    Raises:
      - ValueError: plugin config rejected by the plugin's config model.
      - TypeError: raw is not one of the supported forms.

    Example:
      cache:
        module: in_memory_ttl
        config: {maxsize: 4096}
        handoff_timeout_ms: 20
    """

    if raw is None or raw is False:
        return None
    if raw is True:
        raw = {}
    if isinstance(raw, str):
        raw = {"module": raw}
    if not isinstance(raw, dict):
        raise TypeError("cache config must be a mapping, string, boolean or null")
    if not raw.get("enabled", True):
        return None

    module = raw.get("module", DEFAULT_CACHE_MODULE)
    if module is None or _normalize(str(module)) in DISABLED_ALIASES:
        return None
    module = str(module).strip() or DEFAULT_CACHE_MODULE

    subcfg = raw.get("config")
    if not isinstance(subcfg, dict):
        subcfg = {}

    cls = get_cache_plugin_class(module)
    try:
        return cls(**dict(subcfg))
    except ValueError as exc:
        raise ValueError(
            f"Invalid configuration for cache plugin {cls.__name__}: {exc}"
        ) from exc
