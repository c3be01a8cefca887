from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from tenantbot.persistence.db import SessionFactory, ping as ping_database
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.jobs.orchestrator import JobOrchestrator
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
_SEVERITY = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}

# Slow-but-working dependencies report degraded.
DATABASE_SLOW_MS = 1000
QUEUE_SLOW_MS = 500
FAILURE_RATE_DEGRADED = 0.10
FAILURE_RATE_UNHEALTHY = 0.20
EXPIRED_SHARE_DEGRADED = 0.5


@dataclass(frozen=True)
class ComponentHealth:
    status: str
    response_time_ms: float
    message: str | None = None


@dataclass(frozen=True)
class SystemHealth:
    status: str
    timestamp: datetime
    uptime_s: float
    components: dict[str, ComponentHealth]
    queue_stats: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "uptime_s": round(self.uptime_s, 3),
            "components": {
                name: {
                    "status": component.status,
                    "response_time_ms": round(component.response_time_ms, 2),
                    "message": component.message,
                }
                for name, component in self.components.items()
            },
            "queue_stats": self.queue_stats,
        }


def failure_rate_status(stats: dict[str, dict[str, int]]) -> tuple[str, str | None]:
    failed = sum(counts.get("failed", 0) for counts in stats.values())
    total = sum(
        counts.get("waiting", 0) + counts.get("active", 0) + counts.get("completed", 0) + counts.get("failed", 0)
        for counts in stats.values()
    )
    rate = failed / total if total else 0.0
    if rate > FAILURE_RATE_UNHEALTHY:
        return UNHEALTHY, f"Critical failure rate: {rate * 100:.1f}%"
    if rate > FAILURE_RATE_DEGRADED:
        return DEGRADED, f"High failure rate: {rate * 100:.1f}%"
    return HEALTHY, None


def credential_status(summary: dict[str, int]) -> tuple[str, str | None]:
    valid = summary.get("valid", 0)
    expired = summary.get("expired", 0)
    if valid == 0:
        return DEGRADED, "No credentials configured"
    if expired > valid * EXPIRED_SHARE_DEGRADED:
        return DEGRADED, f"Many expired credentials: {expired}/{valid}"
    return HEALTHY, None


def worst_status(statuses: list[str]) -> str:
    return max(statuses, key=lambda status: _SEVERITY[status], default=HEALTHY)


class SystemHealthService:
    """Aggregates database, queue backend, job and credential health for the ops surface."""

    def __init__(
        self,
        session_factory: SessionFactory,
        orchestrator: JobOrchestrator,
        credentials: CredentialStore,
        *,
        metrics: MetricsRegistry | None = None,
        started_at: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._credentials = credentials
        self._metrics = metrics
        self._started_at = started_at if started_at is not None else time.monotonic()

    async def check(self) -> SystemHealth:
        database, queue, jobs, credentials = await asyncio.gather(
            self._timed("database", self._check_database),
            self._timed("queue", self._check_queue),
            self._timed("jobs", self._check_jobs),
            self._timed("credentials", self._check_credentials),
        )
        components = {
            "database": database[0],
            "queue": queue[0],
            "jobs": jobs[0],
            "credentials": credentials[0],
        }
        overall = worst_status([component.status for component in components.values()])
        if self._metrics is not None:
            for name, component in components.items():
                self._metrics.set_gauge(
                    "component_health_status",
                    _SEVERITY[component.status],
                    labels={"component": name},
                )
            self._metrics.set_gauge("system_health_status", _SEVERITY[overall])
        if overall != HEALTHY:
            logger.warning("system_health_%s components=%s", overall, {k: v.status for k, v in components.items()})
        return SystemHealth(
            status=overall,
            timestamp=datetime.now(timezone.utc),
            uptime_s=time.monotonic() - self._started_at,
            components=components,
            queue_stats=jobs[1] or {},
        )

    async def _timed(
        self,
        name: str,
        probe: Callable[[], Awaitable[tuple[str, str | None, Any]]],
    ) -> tuple[ComponentHealth, Any]:
        start = time.monotonic()
        try:
            status, message, extra = await probe()
        except Exception as exc:  # noqa: BLE001 - a failed probe is reported, not raised
            logger.error("health_probe_failed component=%s error=%s", name, type(exc).__name__, exc_info=exc)
            elapsed_ms = (time.monotonic() - start) * 1000.0
            return ComponentHealth(status=UNHEALTHY, response_time_ms=elapsed_ms, message=str(exc) or type(exc).__name__), None
        elapsed_ms = (time.monotonic() - start) * 1000.0
        return ComponentHealth(status=status, response_time_ms=elapsed_ms, message=message), extra

    async def _check_database(self) -> tuple[str, str | None, None]:
        start = time.monotonic()
        await ping_database(self._session_factory)
        if (time.monotonic() - start) * 1000.0 > DATABASE_SLOW_MS:
            return DEGRADED, "Slow response time", None
        return HEALTHY, None, None

    async def _check_queue(self) -> tuple[str, str | None, None]:
        start = time.monotonic()
        await self._orchestrator.ping()
        if (time.monotonic() - start) * 1000.0 > QUEUE_SLOW_MS:
            return DEGRADED, "Slow response time", None
        return HEALTHY, None, None

    async def _check_jobs(self) -> tuple[str, str | None, dict[str, dict[str, int]]]:
        stats = await self._orchestrator.stats()
        status, message = failure_rate_status(stats)
        return status, message, stats

    async def _check_credentials(self) -> tuple[str, str | None, dict[str, int]]:
        summary = await self._credentials.count_summary()
        status, message = credential_status(summary)
        return status, message, summary
