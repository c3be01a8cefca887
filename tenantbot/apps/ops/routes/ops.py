from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from tenantbot.apps.ops.deps import get_registry
from tenantbot.registry import ServiceRegistry


router = APIRouter(tags=["ops"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class QueueStatsResponse(BaseModel):
    # Per job type counts: waiting, delayed, active, completed, failed, cancelled.
    queues: dict[str, dict[str, int]]


class CacheStatsResponse(BaseModel):
    size: int
    max_entries: int
    ttl_s: float
    hits: int
    misses: int
    evictions: int
    hit_rate_percent: float
    memory_usage_bytes: int


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(registry: ServiceRegistry = Depends(get_registry)) -> Any:
    # Refresh queue depth gauges before rendering so scrapes see current values.
    await registry.orchestrator.stats()
    return PlainTextResponse(registry.metrics.render_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)


@router.get("/v1/ops/queues", response_model=QueueStatsResponse)
async def queue_stats(registry: ServiceRegistry = Depends(get_registry)) -> QueueStatsResponse:
    return QueueStatsResponse(queues=await registry.orchestrator.stats())


@router.get("/v1/ops/cache", response_model=CacheStatsResponse)
async def cache_stats(registry: ServiceRegistry = Depends(get_registry)) -> CacheStatsResponse:
    return CacheStatsResponse(**registry.resolver.stats())
