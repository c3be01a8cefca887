from __future__ import annotations

import argparse
import asyncio
import sys

from tenantbot.core.config import get_settings
from tenantbot.core.logging import configure_logging
from tenantbot.domain.jobs import HealthCheckPayload, JobType
from tenantbot.services.jobs import JobOrchestrator
from tenantbot.services.jobs.redis_store import RedisJobStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue a credential health check for one tenant")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--parent-org-id", default=None)
    parser.add_argument("--delay-ms", type=int, default=None)
    return parser


async def _enqueue(tenant_id: str, parent_org_id: str | None, delay_ms: int | None) -> int:
    # Only the queue backend is needed; a running job worker picks the check up.
    settings = get_settings()
    store = await RedisJobStore.connect(settings)
    orchestrator = JobOrchestrator.from_settings(settings, store)
    try:
        job_id = await orchestrator.schedule(
            JobType.CREDENTIAL_HEALTH_CHECK,
            HealthCheckPayload(check_type="single-tenant", tenant_id=tenant_id, parent_org_id=parent_org_id),
            delay_ms=delay_ms,
        )
    finally:
        await store.close()
    print(f"health_check_enqueued job_id={job_id} tenant_id={tenant_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_enqueue(args.tenant_id, args.parent_org_id, args.delay_ms))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"audit_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
