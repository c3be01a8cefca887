from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantbot.core.config import Settings, get_settings
from tenantbot.domain.jobs import CleanupPayload, HealthCheckPayload, JobType
from tenantbot.persistence.db import SessionFactory, create_engine, create_session_factory
from tenantbot.services.clients import ClientResolver, InstallationCredentialSource, PlatformClient, StaticTokenSource
from tenantbot.services.credentials.refresh import OAuthTokenRefresher, TokenRefresher
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.crypto.cipher import TokenCipher
from tenantbot.services.crypto.secrets import build_token_cipher
from tenantbot.services.health.auditor import HealthAuditor
from tenantbot.services.health.system import SystemHealthService
from tenantbot.services.installations import InstallationStore
from tenantbot.services.jobs import JobOrchestrator, JobStore, MemoryJobStore, RateLimiter
from tenantbot.services.jobs.redis_store import RedisJobStore
from tenantbot.services.telemetry import MetricsRegistry
from tenantbot.workers.handlers import (
    LogPruner,
    ReportBuilder,
    SyncRunner,
    UserDirectory,
    build_cleanup_handler,
    build_health_check_handler,
    build_reminder_handler,
    build_report_handler,
    build_sync_handler,
)


logger = logging.getLogger(__name__)

# Stable recurrence ids so re-registering on every boot keeps one armed occurrence.
HEALTH_CHECK_RECURRENCE_ID = "credential-health-check:all"
CLEANUP_JOBS_RECURRENCE_ID = "cleanup:completed_jobs"
CLEANUP_TOKENS_RECURRENCE_ID = "cleanup:expired_tokens"


@dataclass
class ServiceRegistry:
    """Every long-lived collaborator for one process, built once at startup."""

    settings: Settings
    metrics: MetricsRegistry
    engine: AsyncEngine
    session_factory: SessionFactory
    http_client: httpx.AsyncClient
    cipher: TokenCipher
    credentials: CredentialStore
    installations: InstallationStore
    resolver: ClientResolver[PlatformClient]
    orchestrator: JobOrchestrator
    auditor: HealthAuditor
    system_health: SystemHealthService
    _background: list[asyncio.Task[None]] = field(default_factory=list)
    _closed: bool = False

    def start_background_tasks(self) -> None:
        # Periodic client cache sweep alongside the worker pools.
        interval = max(1, int(self.settings.client_cache_sweep_interval_s))
        self._background.append(asyncio.create_task(self.resolver.run_sweeper(interval), name="client-cache-sweeper"))

    async def aclose(self) -> None:
        """Tear down in reverse dependency order; the orchestrator drains first."""
        if self._closed:
            return
        self._closed = True
        await self.orchestrator.shutdown()
        for task in self._background:
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self.resolver.clear_all()
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("service_registry_closed")


async def build_job_store(settings: Settings) -> JobStore:
    if settings.job_execution_mode.lower() == "inline":
        # Inline mode keeps jobs in process memory; nothing survives a restart.
        return MemoryJobStore()
    return await RedisJobStore.connect(settings)


def build_rate_limiter(settings: Settings, store: JobStore) -> RateLimiter:
    # Inline mode keeps per-process windows; queue mode shares them through the job Redis.
    redis = store.redis if isinstance(store, RedisJobStore) else None
    return RateLimiter(
        settings.rate_limits_per_minute(),
        redis=redis,
        prefix=settings.rate_limit_redis_prefix,
        fail_open=settings.rate_limit_fail_mode.lower() != "closed",
    )


async def build_registry(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    cipher: TokenCipher | None = None,
    job_store: JobStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    refresher: TokenRefresher | None = None,
) -> ServiceRegistry:
    """Wire the process from settings; keyword overrides let tests swap backends."""
    settings = settings or get_settings()
    metrics = MetricsRegistry()
    engine = engine or create_engine(settings)
    session_factory = create_session_factory(engine)
    http_client = http_client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)
    cipher = cipher or build_token_cipher(settings)
    refresher = refresher or OAuthTokenRefresher(settings, http_client, metrics=metrics)
    credentials = CredentialStore(session_factory, cipher, refresher=refresher, metrics=metrics)
    installations = InstallationStore(session_factory, credentials)

    def _platform_client(token: str, tenant_id: str, parent_org_id: str | None, source: str) -> PlatformClient:
        return PlatformClient(
            http_client,
            token,
            base_url=settings.platform_api_base_url,
            tenant_id=tenant_id,
            parent_org_id=parent_org_id,
            source=source,
        )

    resolver: ClientResolver[PlatformClient] = ClientResolver(
        [
            InstallationCredentialSource(installations, credentials),
            StaticTokenSource(settings.platform_bot_token),
        ],
        _platform_client,
        installations=installations,
        metrics=metrics,
        max_entries=settings.client_cache_max_entries,
        ttl_s=settings.client_cache_ttl_s,
    )
    store = job_store or await build_job_store(settings)
    orchestrator = JobOrchestrator.from_settings(
        settings,
        store,
        metrics=metrics,
        rate_limiter=build_rate_limiter(settings, store),
    )
    auditor = HealthAuditor(
        installations,
        resolver,
        concurrency=settings.health_check_concurrency,
        metrics=metrics,
    )
    system_health = SystemHealthService(session_factory, orchestrator, credentials, metrics=metrics)
    logger.info(
        "service_registry_built job_mode=%s cache_max=%s cache_ttl_s=%s",
        settings.job_execution_mode,
        settings.client_cache_max_entries,
        settings.client_cache_ttl_s,
    )
    return ServiceRegistry(
        settings=settings,
        metrics=metrics,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        cipher=cipher,
        credentials=credentials,
        installations=installations,
        resolver=resolver,
        orchestrator=orchestrator,
        auditor=auditor,
        system_health=system_health,
    )


def register_default_handlers(
    registry: ServiceRegistry,
    *,
    directory: UserDirectory | None = None,
    report_builder: ReportBuilder | None = None,
    sync_runner: SyncRunner | None = None,
    log_pruner: LogPruner | None = None,
) -> list[JobType]:
    """Register the handlers whose collaborators are available; returns the job types covered."""
    orchestrator = registry.orchestrator
    registered: list[JobType] = []
    orchestrator.register_handler(
        JobType.CLEANUP,
        build_cleanup_handler(orchestrator, registry.credentials, log_pruner=log_pruner),
    )
    registered.append(JobType.CLEANUP)
    orchestrator.register_handler(JobType.CREDENTIAL_HEALTH_CHECK, build_health_check_handler(registry.auditor))
    registered.append(JobType.CREDENTIAL_HEALTH_CHECK)
    if directory is not None:
        orchestrator.register_handler(JobType.REMINDER, build_reminder_handler(registry.resolver, directory))
        registered.append(JobType.REMINDER)
        if report_builder is not None:
            report_handler = build_report_handler(registry.resolver, directory, report_builder)
            orchestrator.register_handler(JobType.DAILY_REPORT, report_handler)
            orchestrator.register_handler(JobType.WEEKLY_REPORT, report_handler)
            registered.extend([JobType.DAILY_REPORT, JobType.WEEKLY_REPORT])
        if sync_runner is not None:
            orchestrator.register_handler(
                JobType.EXTERNAL_SYNC,
                build_sync_handler(registry.credentials, directory, sync_runner),
            )
            registered.append(JobType.EXTERNAL_SYNC)
    return registered


async def schedule_recurring_jobs(registry: ServiceRegistry) -> dict[str, str]:
    """Arm the built-in recurring jobs; safe to call on every boot."""
    settings = registry.settings
    orchestrator = registry.orchestrator
    armed = {
        HEALTH_CHECK_RECURRENCE_ID: await orchestrator.schedule(
            JobType.CREDENTIAL_HEALTH_CHECK,
            HealthCheckPayload(check_type="all"),
            cron_expression=settings.health_check_cron,
            job_id=HEALTH_CHECK_RECURRENCE_ID,
        ),
        CLEANUP_JOBS_RECURRENCE_ID: await orchestrator.schedule(
            JobType.CLEANUP,
            CleanupPayload(target_type="completed_jobs", older_than=timedelta(days=settings.job_retention_days)),
            cron_expression=settings.cleanup_jobs_cron,
            job_id=CLEANUP_JOBS_RECURRENCE_ID,
        ),
        CLEANUP_TOKENS_RECURRENCE_ID: await orchestrator.schedule(
            JobType.CLEANUP,
            CleanupPayload(
                target_type="expired_tokens",
                older_than=timedelta(days=settings.invalid_token_retention_days),
            ),
            cron_expression=settings.cleanup_tokens_cron,
            job_id=CLEANUP_TOKENS_RECURRENCE_ID,
        ),
    }
    logger.info("recurring_jobs_armed %s", " ".join(f"{key}={value}" for key, value in armed.items()))
    return armed
