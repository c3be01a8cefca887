from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tenantbot.core.errors import JobPayloadError
from tenantbot.domain.jobs import (
    CleanupPayload,
    ExternalSyncPayload,
    HealthCheckPayload,
    JobRecord,
    JobType,
    ReminderPayload,
    ReportPayload,
    parse_job_type,
    parse_payload,
)
from tenantbot.domain.models import CredentialProvider


def test_reminder_payload_accepts_wire_names() -> None:
    payload = parse_payload(
        "reminder",
        {
            "taskId": "task-1",
            "userId": "U1",
            "reminderType": "day_before",
            "scheduledAt": "2026-01-05T09:00:00Z",
            "message": "Standup tomorrow",
        },
    )
    assert isinstance(payload, ReminderPayload)
    assert payload.task_id == "task-1"
    assert payload.to_wire()["reminderType"] == "day_before"


def test_unknown_job_type_is_rejected() -> None:
    with pytest.raises(JobPayloadError):
        parse_job_type("send-fax")


def test_missing_and_extra_fields_are_rejected() -> None:
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.REMINDER, {"taskId": "task-1"})
    with pytest.raises(JobPayloadError):
        parse_payload(
            JobType.DAILY_REPORT,
            {"userId": "U1", "reportType": "daily", "includeMetrics": True, "color": "blue"},
        )


def test_report_type_must_match_job_type() -> None:
    payload = {"userId": "U1", "reportType": "weekly", "includeMetrics": False}
    assert isinstance(parse_payload(JobType.WEEKLY_REPORT, payload), ReportPayload)
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.DAILY_REPORT, payload)


def test_payload_model_for_wrong_type_is_rejected() -> None:
    cleanup = CleanupPayload(target_type="old_logs", older_than=timedelta(days=1))
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.REMINDER, cleanup)


def test_external_sync_provider_enum() -> None:
    payload = parse_payload(
        JobType.EXTERNAL_SYNC,
        {"userId": "U1", "provider": "calendar", "syncType": "incremental"},
    )
    assert isinstance(payload, ExternalSyncPayload)
    assert payload.provider is CredentialProvider.CALENDAR
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.EXTERNAL_SYNC, {"userId": "U1", "provider": "fax", "syncType": "full"})


def test_health_check_tenant_rules() -> None:
    assert parse_payload(JobType.CREDENTIAL_HEALTH_CHECK, {"scope": "all"}).check_type == "all"
    single = parse_payload(
        JobType.CREDENTIAL_HEALTH_CHECK,
        {"checkType": "single-tenant", "tenantId": "T1"},
    )
    assert isinstance(single, HealthCheckPayload)
    assert single.tenant_id == "T1"
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.CREDENTIAL_HEALTH_CHECK, {"checkType": "single-tenant"})
    with pytest.raises(JobPayloadError):
        parse_payload(JobType.CREDENTIAL_HEALTH_CHECK, {"checkType": "all", "tenantId": "T1"})


def test_cleanup_cutoff_from_duration_or_timestamp() -> None:
    now = datetime(2026, 1, 10, tzinfo=timezone.utc)
    relative = parse_payload(JobType.CLEANUP, {"targetType": "completed_jobs", "olderThan": "P7D"})
    assert relative.cutoff(now) == datetime(2026, 1, 3, tzinfo=timezone.utc)
    absolute = parse_payload(
        JobType.CLEANUP,
        {"targetType": "expired_tokens", "olderThan": "2026-01-01T00:00:00"},
    )
    assert absolute.cutoff(now) == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_job_record_json_keeps_payload_type() -> None:
    record = JobRecord(
        id="job-1",
        job_type=JobType.CLEANUP,
        payload=CleanupPayload(target_type="old_logs", older_than=timedelta(days=3)),
        scheduled_at=datetime(2026, 1, 5, tzinfo=timezone.utc),
    )
    restored = JobRecord.from_json(record.to_json())
    assert isinstance(restored.payload, CleanupPayload)
    assert restored.payload.older_than == timedelta(days=3)
    assert restored.scheduled_at == record.scheduled_at
