from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Generic, Optional, Sequence, TypeVar

from tenantbot.core.errors import NoValidCredentialError
from tenantbot.domain.models import installation_key
from tenantbot.services.clients.cache import LRUTTLCache
from tenantbot.services.clients.sources import CredentialSource
from tenantbot.services.installations import InstallationStore
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

C = TypeVar("C")

# Rough per-entry footprint (client object + key + bookkeeping) for the memory gauge.
ENTRY_MEMORY_ESTIMATE_BYTES = 1100
# A lookup that keeps losing to concurrent evictions gives up after this many builds.
_MAX_BUILD_ATTEMPTS = 3

ClientFactory = Callable[[str, str, Optional[str], str], C]


class ClientResolver(Generic[C]):
    """Resolves a tenant identity to a live API client through a bounded cache.

    Misses walk the ordered credential sources. Lookups for one key are
    serialized so concurrent misses build a single client, and a generation
    counter per key keeps a client built before an eviction from ever being
    cached after it.
    """

    def __init__(
        self,
        sources: Sequence[CredentialSource],
        client_factory: ClientFactory,
        *,
        installations: InstallationStore | None = None,
        metrics: MetricsRegistry | None = None,
        max_entries: int = 500,
        ttl_s: float = 600,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._sources = list(sources)
        self._client_factory = client_factory
        self._installations = installations
        self._metrics = metrics
        self._cache: LRUTTLCache[str, C] = LRUTTLCache(max_entries, ttl_s, clock=clock)
        self._ttl_s = ttl_s
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        if metrics is not None:
            metrics.describe("auth_cache_hits_total", "Client cache hits")
            metrics.describe("auth_cache_misses_total", "Client cache misses")
            metrics.describe("auth_cache_size", "Entries in the client cache")
            metrics.describe("auth_cache_memory_usage_bytes", "Estimated client cache memory")
            metrics.describe("client_creation_duration_seconds", "Time to build a client on cache miss")
            metrics.describe("invalid_auth_events_total", "Credentials rejected by the provider")

    async def resolve(self, tenant_id: str, parent_org_id: str | None = None) -> C:
        key = installation_key(tenant_id, parent_org_id)
        cached = self._cache.get(key)
        if cached is not None:
            self._record_hit()
            return cached
        self._record_miss()
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # A concurrent miss may have filled the entry while we waited.
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            for _ in range(_MAX_BUILD_ATTEMPTS):
                generation = self._generations.get(key, 0)
                client = await self._build(tenant_id, parent_org_id)
                if self._generations.get(key, 0) == generation:
                    self._insert(key, client)
                    return client
                logger.info("client_build_raced_eviction key=%s", key)
        raise NoValidCredentialError(tenant_id, parent_org_id)

    def evict(self, tenant_id: str, parent_org_id: str | None = None) -> bool:
        key = installation_key(tenant_id, parent_org_id)
        # Bump first so an in-flight build for this key is discarded.
        self._generations[key] = self._generations.get(key, 0) + 1
        removed = self._cache.pop(key) is not None
        if removed:
            self._evictions += 1
            logger.info("client_evicted key=%s", key)
        self._update_gauges()
        return removed

    def contains(self, tenant_id: str, parent_org_id: str | None = None) -> bool:
        return self._cache.contains(installation_key(tenant_id, parent_org_id))

    async def on_invalid_credential(self, tenant_id: str, parent_org_id: str | None = None) -> None:
        """Evict the cached client and delete the installation and its credential.

        The per-key lock is held across the delete so a concurrent miss waits
        and rebuilds from the post-delete state, and the second eviction drops
        anything a build already holding the lock cached from the dead token.
        """
        key = installation_key(tenant_id, parent_org_id)
        self.evict(tenant_id, parent_org_id)
        if self._metrics is not None:
            self._metrics.increment_counter("invalid_auth_events_total", labels={"tenant_id": tenant_id})
        logger.warning("invalid_credential tenant_id=%s parent_org_id=%s", tenant_id, parent_org_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                if self._installations is not None:
                    await self._installations.delete(tenant_id, parent_org_id)
            finally:
                self.evict(tenant_id, parent_org_id)

    def clear_all(self) -> int:
        for key in self._cache.keys():
            self._generations[key] = self._generations.get(key, 0) + 1
        cleared = self._cache.clear()
        logger.info("client_cache_cleared entries=%s", cleared)
        self._update_gauges()
        return cleared

    def purge_stale(self) -> int:
        purged = self._cache.purge_stale()
        # Drop per-key bookkeeping for keys with no cached client and no lookup in flight.
        live = set(self._cache.keys())
        busy = {key for key, lock in self._locks.items() if lock.locked()}
        for key in [k for k in self._locks if k not in live and k not in busy]:
            del self._locks[key]
        for key in [k for k in self._generations if k not in live and k not in busy]:
            del self._generations[key]
        if purged:
            logger.info("client_cache_purged entries=%s", purged)
        self._update_gauges()
        return purged

    async def run_sweeper(self, interval_s: float) -> None:
        # Periodic TTL sweep so idle entries do not hold memory until the next access.
        while True:
            await asyncio.sleep(interval_s)
            self.purge_stale()

    def stats(self) -> dict[str, float | int]:
        lookups = self._hits + self._misses
        size = len(self._cache)
        return {
            "size": size,
            "max_entries": self._cache.max_entries,
            "ttl_s": self._ttl_s,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate_percent": round((self._hits / lookups) * 100.0, 2) if lookups else 0.0,
            "memory_usage_bytes": size * ENTRY_MEMORY_ESTIMATE_BYTES,
        }

    async def _build(self, tenant_id: str, parent_org_id: str | None) -> C:
        start = time.monotonic()
        for source in self._sources:
            token = await source.lookup(tenant_id, parent_org_id)
            if token is None:
                continue
            client = self._client_factory(token, tenant_id, parent_org_id, source.name)
            if self._metrics is not None:
                self._metrics.observe(
                    "client_creation_duration_seconds",
                    time.monotonic() - start,
                    labels={"source": source.name},
                )
            logger.debug("client_built tenant_id=%s source=%s", tenant_id, source.name)
            return client
        logger.warning("no_credential_source tenant_id=%s parent_org_id=%s", tenant_id, parent_org_id)
        raise NoValidCredentialError(tenant_id, parent_org_id)

    def _insert(self, key: str, client: C) -> None:
        evicted = self._cache.set(key, client)
        for old_key in evicted:
            self._evictions += 1
            self._generations[old_key] = self._generations.get(old_key, 0) + 1
            logger.debug("client_evicted_lru key=%s", old_key)
        self._update_gauges()

    def _record_hit(self) -> None:
        self._hits += 1
        if self._metrics is not None:
            self._metrics.increment_counter("auth_cache_hits_total")

    def _record_miss(self) -> None:
        self._misses += 1
        if self._metrics is not None:
            self._metrics.increment_counter("auth_cache_misses_total")

    def _update_gauges(self) -> None:
        if self._metrics is None:
            return
        size = len(self._cache)
        self._metrics.set_gauge("auth_cache_size", size)
        self._metrics.set_gauge("auth_cache_memory_usage_bytes", size * ENTRY_MEMORY_ESTIMATE_BYTES)
