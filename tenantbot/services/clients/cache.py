from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, TypeVar


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUTTLCache(Generic[K, V]):
    """Bounded map with least-recently-used eviction and per-entry TTL.

    Reads and existence checks both refresh an entry's recency and restart
    its TTL. Not thread-safe; callers serialize access on the event loop.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_s: float,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl_s = ttl_s
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[K, tuple[V, float]] = OrderedDict()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        now = self._clock()
        if expires_at <= now:
            del self._entries[key]
            return None
        self._entries[key] = (value, now + self._ttl_s)
        self._entries.move_to_end(key)
        return value

    def contains(self, key: K) -> bool:
        return self.get(key) is not None

    def set(self, key: K, value: V) -> list[K]:
        """Insert or replace `key`; returns keys evicted to stay within capacity."""
        self._entries[key] = (value, self._clock() + self._ttl_s)
        self._entries.move_to_end(key)
        evicted: list[K] = []
        while len(self._entries) > self._max_entries:
            oldest, _ = self._entries.popitem(last=False)
            evicted.append(oldest)
        return evicted

    def pop(self, key: K) -> V | None:
        entry = self._entries.pop(key, None)
        return entry[0] if entry is not None else None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def purge_stale(self) -> int:
        now = self._clock()
        stale = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def keys(self) -> list[K]:
        # Least recently used first.
        return list(self._entries.keys())
