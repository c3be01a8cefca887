from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from tenantbot.core.errors import InvalidCredentialError
from tenantbot.domain.jobs import HealthCheckPayload
from tenantbot.services.clients.resolver import ClientResolver
from tenantbot.services.installations import InstallationRecord, InstallationStore
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)


class ProbeClient(Protocol):
    async def auth_test(self) -> Any:
        ...


@dataclass(frozen=True)
class AuditReport:
    checked: int
    evicted: int
    errors: int


class HealthAuditor:
    """Probes every installation's credential and evicts the ones the provider rejects.

    Only an explicit auth rejection removes an installation; network or
    provider errors are logged and left for the next audit.
    """

    def __init__(
        self,
        installations: InstallationStore,
        resolver: ClientResolver[ProbeClient],
        *,
        concurrency: int = 5,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._installations = installations
        self._resolver = resolver
        self._concurrency = max(1, concurrency)
        self._metrics = metrics

    async def run(self, payload: HealthCheckPayload) -> AuditReport:
        if payload.check_type == "single-tenant":
            return await self.audit_tenant(payload.tenant_id or "", payload.parent_org_id)
        return await self.audit_all()

    async def audit_all(self) -> AuditReport:
        records = await self._installations.list_installations()
        return await self._audit(records, scope="all")

    async def audit_tenant(self, tenant_id: str, parent_org_id: str | None = None) -> AuditReport:
        records = await self._installations.list_installations(tenant_id)
        if parent_org_id is not None:
            records = [record for record in records if record.parent_org_id == parent_org_id]
        return await self._audit(records, scope=f"tenant:{tenant_id}")

    async def _audit(self, records: list[InstallationRecord], *, scope: str) -> AuditReport:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(record: InstallationRecord) -> str:
            async with semaphore:
                return await self._check(record)

        outcomes = await asyncio.gather(*(_bounded(record) for record in records))
        report = AuditReport(
            checked=len(outcomes),
            evicted=sum(1 for outcome in outcomes if outcome == "evicted"),
            errors=sum(1 for outcome in outcomes if outcome == "error"),
        )
        if self._metrics is not None:
            self._metrics.increment_counter("credential_audit_runs_total")
            self._metrics.set_gauge("credential_audit_last_checked", report.checked)
            self._metrics.set_gauge("credential_audit_last_evicted", report.evicted)
        logger.info(
            "credential_audit_completed scope=%s checked=%s evicted=%s errors=%s",
            scope,
            report.checked,
            report.evicted,
            report.errors,
        )
        return report

    async def _check(self, record: InstallationRecord) -> str:
        try:
            client = await self._resolver.resolve(record.tenant_id, record.parent_org_id)
            await client.auth_test()
        except InvalidCredentialError as exc:
            logger.warning(
                "credential_audit_rejected tenant_id=%s parent_org_id=%s error_code=%s",
                record.tenant_id,
                record.parent_org_id,
                exc.error_code,
            )
            await self._resolver.on_invalid_credential(record.tenant_id, record.parent_org_id)
            return "evicted"
        except Exception as exc:  # noqa: BLE001 - one tenant's failure must not stop the audit
            logger.warning(
                "credential_audit_error tenant_id=%s parent_org_id=%s error=%s",
                record.tenant_id,
                record.parent_org_id,
                f"{type(exc).__name__}: {exc}",
            )
            return "error"
        return "ok"
