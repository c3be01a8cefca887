from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from tenantbot.apps.ops.main import create_app
from tenantbot.registry import build_registry
from tenantbot.services.jobs.store import MemoryJobStore


@pytest.fixture
async def registry(settings, engine, cipher, refresher):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True})))
    registry = await build_registry(
        settings,
        engine=engine,
        cipher=cipher,
        job_store=MemoryJobStore(),
        http_client=http_client,
        refresher=refresher,
    )
    yield registry
    await registry.aclose()


@pytest.mark.asyncio
async def test_health_reports_components(registry) -> None:
    app = create_app(registry)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert set(body["components"]) == {"database", "queue", "jobs", "credentials"}
        assert body["components"]["database"]["status"] == "healthy"
        assert body["components"]["credentials"]["message"] == "No credentials configured"

        await registry.installations.save("T1", None, "xoxb-1")
        response = await client.get("/health")
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_health_is_503_when_a_dependency_is_down(registry) -> None:
    app = create_app(registry)
    await registry.installations.save("T1", None, "xoxb-1")

    async def broken_ping() -> None:
        raise ConnectionError("queue unreachable")

    registry.orchestrator.ping = broken_ping
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["components"]["queue"]["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_queue_and_cache_stats(registry) -> None:
    await registry.orchestrator.schedule("cleanup", {"targetType": "old_logs", "olderThan": "P1D"}, delay_ms=60_000)
    await registry.installations.save("T1", None, "xoxb-1")

    await registry.resolver.resolve("T1")
    await registry.resolver.resolve("T1")

    app = create_app(registry)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        queues = await client.get("/v1/ops/queues")
        cache = await client.get("/v1/ops/cache")
        metrics = await client.get("/metrics")

    assert queues.status_code == 200
    cleanup = queues.json()["queues"]["cleanup"]
    assert cleanup["waiting"] == 1
    assert cleanup["delayed"] == 1
    assert set(queues.json()["queues"]) >= {"reminder", "external-sync", "credential-health-check"}

    assert cache.status_code == 200
    assert cache.json()["size"] == 1
    assert cache.json()["hits"] == 1
    assert cache.json()["misses"] == 1
    assert cache.json()["hit_rate_percent"] == 50.0

    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    assert 'queue_depth{job_type="cleanup",status="waiting"} 1' in metrics.text
    assert "auth_cache_hits_total 1" in metrics.text


@pytest.mark.asyncio
async def test_routes_return_503_without_registry() -> None:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/ops/queues")
    assert response.status_code == 503
