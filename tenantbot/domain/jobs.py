from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from tenantbot.core.errors import JobPayloadError
from tenantbot.domain.models import CredentialProvider


class JobType(str, Enum):
    REMINDER = "reminder"
    DAILY_REPORT = "daily-report"
    WEEKLY_REPORT = "weekly-report"
    EXTERNAL_SYNC = "external-sync"
    CLEANUP = "cleanup"
    CREDENTIAL_HEALTH_CHECK = "credential-health-check"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
# Statuses that block a second record with the same id (occurrence key dedupe).
IN_FLIGHT_STATUSES = frozenset({JobStatus.PENDING, JobStatus.ACTIVE})


class _Payload(BaseModel):
    # Wire field names are camelCase; Python code uses snake_case attributes.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReminderPayload(_Payload):
    task_id: str
    user_id: str
    reminder_type: Literal["day_before", "before_free_time"]
    scheduled_at: datetime
    message: str


class ReportPayload(_Payload):
    user_id: str
    report_type: Literal["daily", "weekly"]
    channel_id: str | None = None
    include_metrics: bool


class ExternalSyncPayload(_Payload):
    user_id: str
    provider: CredentialProvider
    sync_type: Literal["full", "incremental"]
    last_sync_at: datetime | None = None


class CleanupPayload(_Payload):
    target_type: Literal["completed_jobs", "expired_tokens", "old_logs"]
    # Absolute cutoff, or an ISO-8601 duration ("P7D") relative to the run time.
    older_than: Union[datetime, timedelta]

    def cutoff(self, now: datetime) -> datetime:
        if isinstance(self.older_than, timedelta):
            return now - self.older_than
        if self.older_than.tzinfo is None:
            return self.older_than.replace(tzinfo=timezone.utc)
        return self.older_than


class HealthCheckPayload(_Payload):
    check_type: Literal["all", "single-tenant"] = Field(
        validation_alias=AliasChoices("checkType", "check_type", "scope"),
        serialization_alias="checkType",
    )
    tenant_id: str | None = None
    parent_org_id: str | None = None

    @model_validator(mode="after")
    def _require_tenant_for_single(self) -> "HealthCheckPayload":
        if self.check_type == "single-tenant" and not self.tenant_id:
            raise ValueError("tenantId is required when checkType is single-tenant")
        if self.check_type == "all" and self.tenant_id:
            raise ValueError("tenantId must be omitted when checkType is all")
        return self


JobPayload = Union[
    ReminderPayload,
    ReportPayload,
    ExternalSyncPayload,
    CleanupPayload,
    HealthCheckPayload,
]

PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.REMINDER: ReminderPayload,
    JobType.DAILY_REPORT: ReportPayload,
    JobType.WEEKLY_REPORT: ReportPayload,
    JobType.EXTERNAL_SYNC: ExternalSyncPayload,
    JobType.CLEANUP: CleanupPayload,
    JobType.CREDENTIAL_HEALTH_CHECK: HealthCheckPayload,
}

_REPORT_TYPES = {
    JobType.DAILY_REPORT: "daily",
    JobType.WEEKLY_REPORT: "weekly",
}


def parse_job_type(value: JobType | str) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise JobPayloadError(f"Unknown job type: {value}") from exc


def parse_payload(job_type: JobType | str, payload: Any) -> JobPayload:
    """Validate a raw payload against the schema of its job type.

    Accepts either an already-built payload model or a mapping using wire
    (camelCase) or attribute (snake_case) names. Raises JobPayloadError on
    any mismatch so bad payloads are rejected at enqueue time.
    """
    resolved = parse_job_type(job_type)
    model = PAYLOAD_MODELS[resolved]
    if isinstance(payload, BaseModel) and not isinstance(payload, model):
        raise JobPayloadError(
            f"{type(payload).__name__} is not a valid payload for job type {resolved.value}"
        )
    try:
        parsed = payload if isinstance(payload, model) else model.model_validate(payload)
    except ValidationError as exc:
        raise JobPayloadError(f"Invalid {resolved.value} payload: {exc}") from exc
    expected_report = _REPORT_TYPES.get(resolved)
    if expected_report is not None and parsed.report_type != expected_report:
        raise JobPayloadError(
            f"reportType {parsed.report_type!r} does not match job type {resolved.value}"
        )
    return parsed


class Recurrence(BaseModel):
    recurrence_id: str
    cron_expression: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    id: str
    job_type: JobType
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: datetime
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    finished_at: datetime | None = None
    last_error: str | None = None
    result: Any = None
    recurrence: Recurrence | None = None
    # Claim lease: which worker holds an active record and when it last vouched for it.
    lease_owner: str | None = None
    leased_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _parse_payload_for_type(cls, data: Any) -> Any:
        # Resolve the payload model from job_type so stored JSON round-trips to the right type.
        if isinstance(data, dict) and "job_type" in data and "payload" in data:
            data = dict(data)
            data["payload"] = parse_payload(data["job_type"], data["payload"])
        return data

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "JobRecord":
        return cls.model_validate(json.loads(raw))
