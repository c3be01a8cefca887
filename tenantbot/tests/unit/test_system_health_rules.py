from __future__ import annotations

from tenantbot.services.health.system import (
    DEGRADED,
    HEALTHY,
    UNHEALTHY,
    credential_status,
    failure_rate_status,
    worst_status,
)


def _stats(waiting: int = 0, active: int = 0, completed: int = 0, failed: int = 0) -> dict[str, dict[str, int]]:
    return {"reminder": {"waiting": waiting, "active": active, "completed": completed, "failed": failed}}


def test_failure_rate_thresholds() -> None:
    assert failure_rate_status({})[0] == HEALTHY
    assert failure_rate_status(_stats(completed=90, failed=10))[0] == HEALTHY
    status, message = failure_rate_status(_stats(completed=85, failed=15))
    assert status == DEGRADED
    assert message == "High failure rate: 15.0%"
    status, message = failure_rate_status(_stats(completed=70, failed=30))
    assert status == UNHEALTHY
    assert message == "Critical failure rate: 30.0%"


def test_failure_rate_spans_all_queues() -> None:
    stats = {
        "reminder": {"waiting": 0, "active": 0, "completed": 50, "failed": 0},
        "cleanup": {"waiting": 0, "active": 0, "completed": 38, "failed": 12},
    }
    assert failure_rate_status(stats)[0] == DEGRADED


def test_credential_thresholds() -> None:
    assert credential_status({"valid": 0, "expired": 0}) == (DEGRADED, "No credentials configured")
    assert credential_status({"valid": 10, "expired": 5})[0] == HEALTHY
    assert credential_status({"valid": 10, "expired": 6})[0] == DEGRADED


def test_worst_status_wins() -> None:
    assert worst_status([HEALTHY, DEGRADED, HEALTHY]) == DEGRADED
    assert worst_status([DEGRADED, UNHEALTHY]) == UNHEALTHY
    assert worst_status([]) == HEALTHY
