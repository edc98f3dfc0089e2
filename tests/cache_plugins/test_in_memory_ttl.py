"""Brief: Unit tests for the in_memory_ttl cache plugin.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import pytest

from dohstub.cache_plugins.in_memory_ttl import InMemoryTTLCache

KEY = ("example.com.", 1, 1, "192.0.2.0/24")


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_get_returns_value_until_ttl_elapses() -> None:
    """Brief: Entries are served until their own TTL passes.

    Inputs:
      - None

    Outputs:
      - None; asserts hit before expiry and miss after.
    """

    clock = _Clock()
    c = InMemoryTTLCache(timer=clock)
    c.set(KEY, 30, b"wire")
    clock.now += 29
    assert c.get(KEY) == b"wire"
    clock.now += 2
    assert c.get(KEY) is None
    assert c.cache_hits == 1
    assert c.cache_misses == 1
    assert c.calls_total == 2


def test_non_positive_ttl_is_not_stored() -> None:
    """Brief: set() with ttl <= 0 is ignored.

    Inputs:
      - None

    Outputs:
      - None
    """

    c = InMemoryTTLCache()
    c.set(KEY, 0, b"wire")
    c.set(KEY, -5, b"wire")
    assert len(c) == 0
    assert c.get(KEY) is None


def test_purge_removes_expired_entries() -> None:
    """Brief: purge() drops expired entries and reports how many.

    Inputs:
      - None

    Outputs:
      - None
    """

    clock = _Clock()
    c = InMemoryTTLCache(timer=clock)
    c.set(("a.", 1, 1, ""), 10, b"a")
    c.set(("b.", 1, 1, ""), 100, b"b")
    clock.now += 50
    assert c.purge() == 1
    assert len(c) == 1
    assert c.get(("b.", 1, 1, "")) == b"b"


def test_maxsize_bounds_entries() -> None:
    """Brief: The store never holds more than maxsize entries.

    Inputs:
      - None

    Outputs:
      - None
    """

    c = InMemoryTTLCache(maxsize=2)
    for i in range(5):
        c.set((f"n{i}.", 1, 1, ""), 60, b"x")
    assert len(c) == 2
    assert c.get(("n4.", 1, 1, "")) == b"x"


def test_config_fields_and_validation() -> None:
    """Brief: Config fields are exposed and invalid config is rejected.

    Inputs:
      - None

    Outputs:
      - None
    """

    c = InMemoryTTLCache(maxsize=10, min_cache_ttl=5, max_cache_ttl=None)
    assert (c.maxsize, c.min_cache_ttl, c.max_cache_ttl) == (10, 5, None)

    defaults = InMemoryTTLCache()
    assert (defaults.maxsize, defaults.min_cache_ttl, defaults.max_cache_ttl) == (
        4096,
        0,
        86400,
    )

    with pytest.raises(ValueError):
        InMemoryTTLCache(maxsize=0)
    with pytest.raises(ValueError):
        InMemoryTTLCache(unknown_option=True)
