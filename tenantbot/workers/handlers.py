from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from tenantbot.core.errors import InvalidCredentialError, NoValidCredentialError, RefreshError
from tenantbot.domain.jobs import (
    CleanupPayload,
    ExternalSyncPayload,
    HealthCheckPayload,
    ReminderPayload,
    ReportPayload,
)
from tenantbot.services.clients.platform import PlatformClient
from tenantbot.services.clients.resolver import ClientResolver
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.health.auditor import HealthAuditor
from tenantbot.services.jobs.orchestrator import JobOrchestrator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRoute:
    # Where a user's messages go: their workspace and default channel (usually the DM).
    tenant_id: str
    parent_org_id: str | None
    channel_id: str


class UserDirectory(Protocol):
    async def route_for(self, user_id: str) -> UserRoute | None:
        ...


class ReportBuilder(Protocol):
    async def build(self, payload: ReportPayload) -> str:
        ...


class SyncRunner(Protocol):
    async def run(self, payload: ExternalSyncPayload, *, tenant_id: str, access_token: str) -> Any:
        ...


class LogPruner(Protocol):
    async def prune(self, cutoff: datetime) -> int:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _post_to_user(
    resolver: ClientResolver[PlatformClient],
    route: UserRoute,
    channel_id: str,
    text: str,
) -> dict[str, Any]:
    # Auth rejection evicts the tenant and completes the job; retrying a revoked token cannot succeed.
    client = await resolver.resolve(route.tenant_id, route.parent_org_id)
    try:
        response = await client.post_message(channel_id, text)
    except InvalidCredentialError as exc:
        await resolver.on_invalid_credential(route.tenant_id, route.parent_org_id)
        return {"delivered": False, "reason": "credential_rejected", "error_code": exc.error_code}
    return {"delivered": True, "channel": channel_id, "ts": response.get("ts")}


def build_reminder_handler(
    resolver: ClientResolver[PlatformClient],
    directory: UserDirectory,
) -> Callable[[ReminderPayload], Awaitable[dict[str, Any]]]:
    async def handle_reminder(payload: ReminderPayload) -> dict[str, Any]:
        route = await directory.route_for(payload.user_id)
        if route is None:
            logger.warning("reminder_user_unknown task_id=%s user_id=%s", payload.task_id, payload.user_id)
            return {"delivered": False, "reason": "unknown_user"}
        try:
            result = await _post_to_user(resolver, route, route.channel_id, payload.message)
        except NoValidCredentialError:
            logger.warning("reminder_no_credential task_id=%s tenant_id=%s", payload.task_id, route.tenant_id)
            return {"delivered": False, "reason": "no_credential"}
        logger.info(
            "reminder_processed task_id=%s reminder_type=%s delivered=%s",
            payload.task_id,
            payload.reminder_type,
            result["delivered"],
        )
        return {"task_id": payload.task_id, **result}

    return handle_reminder


def build_report_handler(
    resolver: ClientResolver[PlatformClient],
    directory: UserDirectory,
    builder: ReportBuilder,
) -> Callable[[ReportPayload], Awaitable[dict[str, Any]]]:
    async def handle_report(payload: ReportPayload) -> dict[str, Any]:
        route = await directory.route_for(payload.user_id)
        if route is None:
            logger.warning("report_user_unknown user_id=%s report_type=%s", payload.user_id, payload.report_type)
            return {"delivered": False, "reason": "unknown_user"}
        text = await builder.build(payload)
        try:
            result = await _post_to_user(resolver, route, payload.channel_id or route.channel_id, text)
        except NoValidCredentialError:
            return {"delivered": False, "reason": "no_credential"}
        logger.info("report_processed user_id=%s report_type=%s", payload.user_id, payload.report_type)
        return {"report_type": payload.report_type, **result}

    return handle_report


def build_sync_handler(
    credentials: CredentialStore,
    directory: UserDirectory,
    runner: SyncRunner,
) -> Callable[[ExternalSyncPayload], Awaitable[Any]]:
    async def handle_external_sync(payload: ExternalSyncPayload) -> Any:
        provider = payload.provider.value
        route = await directory.route_for(payload.user_id)
        if route is None:
            return {"synced": False, "reason": "unknown_user"}
        try:
            token = await credentials.get_valid_access_token(route.tenant_id, provider)
        except RefreshError:
            # The store already invalidated the credential; the user has to reconnect.
            return {"synced": False, "reason": "refresh_failed"}
        if token is None:
            logger.info("external_sync_not_connected tenant_id=%s provider=%s", route.tenant_id, provider)
            return {"synced": False, "reason": "not_connected"}
        try:
            result = await runner.run(payload, tenant_id=route.tenant_id, access_token=token)
        except InvalidCredentialError:
            # A rejected provider token only invalidates that provider, not the workspace install.
            await credentials.invalidate(route.tenant_id, provider)
            return {"synced": False, "reason": "credential_rejected"}
        logger.info("external_sync_processed tenant_id=%s provider=%s sync_type=%s", route.tenant_id, provider, payload.sync_type)
        return {"synced": True, "result": result}

    return handle_external_sync


def build_cleanup_handler(
    orchestrator: JobOrchestrator,
    credentials: CredentialStore,
    *,
    log_pruner: LogPruner | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Callable[[CleanupPayload], Awaitable[dict[str, Any]]]:
    now_fn = clock or _utc_now

    async def handle_cleanup(payload: CleanupPayload) -> dict[str, Any]:
        cutoff = payload.cutoff(now_fn())
        if payload.target_type == "completed_jobs":
            deleted = await orchestrator.purge_finished(cutoff)
        elif payload.target_type == "expired_tokens":
            deleted = await credentials.purge_invalid(cutoff)
        elif log_pruner is not None:
            deleted = await log_pruner.prune(cutoff)
        else:
            logger.info("cleanup_skipped target_type=old_logs reason=no_log_pruner")
            return {"target_type": payload.target_type, "deleted": 0, "skipped": True}
        return {"target_type": payload.target_type, "deleted": deleted, "cutoff": cutoff.isoformat()}

    return handle_cleanup


def build_health_check_handler(auditor: HealthAuditor) -> Callable[[HealthCheckPayload], Awaitable[dict[str, Any]]]:
    async def handle_health_check(payload: HealthCheckPayload) -> dict[str, Any]:
        report = await auditor.run(payload)
        return {"checked": report.checked, "evicted": report.evicted, "errors": report.errors}

    return handle_health_check
