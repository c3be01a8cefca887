from __future__ import annotations

import asyncio
import logging

import pytest

from tenantbot.core.errors import NoValidCredentialError
from tenantbot.services.clients.resolver import ENTRY_MEMORY_ESTIMATE_BYTES, ClientResolver
from tenantbot.services.clients.sources import StaticTokenSource
from tenantbot.services.telemetry import MetricsRegistry


class _Client:
    def __init__(self, token: str, tenant_id: str, parent_org_id: str | None, source: str) -> None:
        self.token = token
        self.tenant_id = tenant_id
        self.parent_org_id = parent_org_id
        self.source = source


class _MapSource:
    name = "installation"

    def __init__(self, tokens: dict[str, str]) -> None:
        self.tokens = tokens
        self.lookups = 0
        self.gate: asyncio.Event | None = None

    async def lookup(self, tenant_id: str, parent_org_id: str | None) -> str | None:
        self.lookups += 1
        token = self.tokens.get(tenant_id)
        if self.gate is not None:
            await self.gate.wait()
        return token


class _RecordingInstallations:
    def __init__(self) -> None:
        self.deleted: list[tuple[str, str | None]] = []

    async def delete(self, tenant_id: str, parent_org_id: str | None = None) -> None:
        self.deleted.append((tenant_id, parent_org_id))


def _resolver(sources, **kwargs) -> ClientResolver[_Client]:
    return ClientResolver(sources, _Client, **kwargs)


@pytest.mark.asyncio
async def test_hit_and_miss_accounting() -> None:
    metrics = MetricsRegistry()
    source = _MapSource({"T1": "xoxb-1"})
    resolver = _resolver([source], metrics=metrics)

    first = await resolver.resolve("T1")
    second = await resolver.resolve("T1")
    assert first is second
    assert source.lookups == 1
    assert metrics.counter_value("auth_cache_misses_total") == 1
    assert metrics.counter_value("auth_cache_hits_total") == 1
    assert metrics.gauge_value("auth_cache_size") == 1
    assert metrics.histogram_count("client_creation_duration_seconds", labels={"source": "installation"}) == 1

    stats = resolver.stats()
    assert stats["hit_rate_percent"] == 50.0
    assert stats["memory_usage_bytes"] == ENTRY_MEMORY_ESTIMATE_BYTES


@pytest.mark.asyncio
async def test_installation_wins_over_static_token() -> None:
    resolver = _resolver([_MapSource({"T1": "xoxb-installed"}), StaticTokenSource("xoxb-static")])
    client = await resolver.resolve("T1", "E1")
    assert client.token == "xoxb-installed"
    assert client.parent_org_id == "E1"


@pytest.mark.asyncio
async def test_static_fallback_logs_warning(caplog) -> None:
    resolver = _resolver([_MapSource({}), StaticTokenSource("xoxb-static")])
    with caplog.at_level(logging.WARNING):
        client = await resolver.resolve("T9")
    assert client.source == "static"
    assert any("static_token_fallback" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_no_source_raises() -> None:
    resolver = _resolver([_MapSource({}), StaticTokenSource(None)])
    with pytest.raises(NoValidCredentialError) as exc_info:
        await resolver.resolve("T1", "E1")
    assert exc_info.value.tenant_id == "T1"
    assert exc_info.value.parent_org_id == "E1"
    assert resolver.contains("T1", "E1") is False


@pytest.mark.asyncio
async def test_concurrent_misses_build_one_client() -> None:
    source = _MapSource({"T1": "xoxb-1"})
    source.gate = asyncio.Event()
    resolver = _resolver([source])

    tasks = [asyncio.create_task(resolver.resolve("T1")) for _ in range(5)]
    await asyncio.sleep(0.02)
    source.gate.set()
    clients = await asyncio.gather(*tasks)

    assert source.lookups == 1
    assert all(client is clients[0] for client in clients)


@pytest.mark.asyncio
async def test_eviction_during_build_discards_stale_client() -> None:
    source = _MapSource({"T1": "old-token"})
    source.gate = asyncio.Event()
    resolver = _resolver([source])

    task = asyncio.create_task(resolver.resolve("T1"))
    await asyncio.sleep(0.02)
    # Token rotated and the entry evicted while the first build is still in flight.
    source.tokens["T1"] = "new-token"
    resolver.evict("T1")
    source.gate.set()
    client = await task

    assert client.token == "new-token"
    assert source.lookups == 2
    assert (await resolver.resolve("T1")).token == "new-token"


@pytest.mark.asyncio
async def test_on_invalid_credential_evicts_and_deletes_installation() -> None:
    metrics = MetricsRegistry()
    installations = _RecordingInstallations()
    source = _MapSource({"T1": "xoxb-1"})
    resolver = _resolver([source], installations=installations, metrics=metrics)
    await resolver.resolve("T1", "E1")

    await resolver.on_invalid_credential("T1", "E1")

    assert resolver.contains("T1", "E1") is False
    assert installations.deleted == [("T1", "E1")]
    assert metrics.counter_value("invalid_auth_events_total", labels={"tenant_id": "T1"}) == 1
    assert resolver.stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_capacity_and_ttl_bound_the_cache() -> None:
    now = {"t": 0.0}
    source = _MapSource({f"T{i}": f"tok-{i}" for i in range(4)})
    resolver = _resolver([source], max_entries=3, ttl_s=30, clock=lambda: now["t"])
    for i in range(4):
        await resolver.resolve(f"T{i}")
    assert resolver.stats()["size"] == 3
    assert resolver.contains("T0") is False

    now["t"] = 31.0
    assert resolver.purge_stale() == 3
    assert resolver.stats()["size"] == 0


@pytest.mark.asyncio
async def test_clear_all_empties_cache() -> None:
    resolver = _resolver([_MapSource({"T1": "a", "T2": "b"})])
    await resolver.resolve("T1")
    await resolver.resolve("T2")
    assert resolver.clear_all() == 2
    assert resolver.contains("T1") is False


class _GatedInstallations:
    """Deletes the tenant's token from the source only after the gate opens."""

    def __init__(self, source: _MapSource) -> None:
        self.source = source
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def delete(self, tenant_id: str, parent_org_id: str | None = None) -> None:
        self.started.set()
        await self.gate.wait()
        self.source.tokens.pop(tenant_id, None)


@pytest.mark.asyncio
async def test_resolve_during_invalidation_never_caches_dead_token() -> None:
    source = _MapSource({"T1": "xoxb-dead"})
    installations = _GatedInstallations(source)
    resolver = _resolver([source, StaticTokenSource(None)], installations=installations)
    await resolver.resolve("T1")

    invalidation = asyncio.create_task(resolver.on_invalid_credential("T1"))
    await installations.started.wait()
    racing = asyncio.create_task(resolver.resolve("T1"))
    await asyncio.sleep(0.02)
    assert not racing.done()

    installations.gate.set()
    await invalidation
    with pytest.raises(NoValidCredentialError):
        await racing
    assert resolver.contains("T1") is False
    with pytest.raises(NoValidCredentialError):
        await resolver.resolve("T1")


@pytest.mark.asyncio
async def test_build_in_flight_at_invalidation_is_dropped() -> None:
    source = _MapSource({"T1": "xoxb-dead"})
    source.gate = asyncio.Event()
    installations = _RecordingInstallations()
    resolver = _resolver([source, StaticTokenSource(None)], installations=installations)

    building = asyncio.create_task(resolver.resolve("T1"))
    await asyncio.sleep(0.02)
    invalidation = asyncio.create_task(resolver.on_invalid_credential("T1"))
    await asyncio.sleep(0.02)
    source.gate.set()
    await building
    await invalidation

    assert installations.deleted == [("T1", None)]
    assert resolver.contains("T1") is False
