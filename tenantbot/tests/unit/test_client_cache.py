from __future__ import annotations

import pytest

from tenantbot.services.clients.cache import LRUTTLCache


def _cache(max_entries: int = 3, ttl_s: float = 60.0):
    now = {"t": 0.0}
    cache: LRUTTLCache[str, str] = LRUTTLCache(max_entries, ttl_s, clock=lambda: now["t"])
    return cache, now


def test_inserting_past_capacity_evicts_least_recently_used() -> None:
    cache, _ = _cache(max_entries=3)
    for key in ("a", "b", "c"):
        assert cache.set(key, key.upper()) == []
    evicted = cache.set("d", "D")
    assert evicted == ["a"]
    assert len(cache) == 3
    assert cache.get("a") is None


def test_get_refreshes_recency() -> None:
    cache, _ = _cache(max_entries=3)
    for key in ("a", "b", "c"):
        cache.set(key, key)
    assert cache.get("a") == "a"
    assert cache.set("d", "d") == ["b"]
    assert cache.keys() == ["c", "a", "d"]


def test_contains_refreshes_recency_and_ttl() -> None:
    cache, now = _cache(max_entries=2, ttl_s=10)
    cache.set("a", "a")
    cache.set("b", "b")
    now["t"] = 8.0
    assert cache.contains("a") is True
    now["t"] = 15.0
    # "b" expired at t=10; "a" was renewed until t=18.
    assert cache.contains("b") is False
    assert cache.contains("a") is True


def test_expired_entries_read_as_absent() -> None:
    cache, now = _cache(ttl_s=5)
    cache.set("a", "a")
    now["t"] = 5.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_purge_stale_drops_only_expired() -> None:
    cache, now = _cache(ttl_s=5)
    cache.set("old", "x")
    now["t"] = 3.0
    cache.set("new", "y")
    now["t"] = 6.0
    assert cache.purge_stale() == 1
    assert cache.keys() == ["new"]


def test_pop_and_clear() -> None:
    cache, _ = _cache()
    cache.set("a", "A")
    cache.set("b", "B")
    assert cache.pop("a") == "A"
    assert cache.pop("a") is None
    assert cache.clear() == 1
    assert len(cache) == 0


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        LRUTTLCache(0, 10)
