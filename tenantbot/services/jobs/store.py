from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from tenantbot.domain.jobs import IN_FLIGHT_STATUSES, JobRecord, JobStatus, JobType


# Status buckets reported per queue; "waiting" covers due and delayed pending jobs.
STAT_KEYS = ("waiting", "delayed", "active", "completed", "failed", "cancelled")


def empty_counts() -> dict[str, int]:
    return {key: 0 for key in STAT_KEYS}


class JobStore(Protocol):
    """Durable job state shared by the orchestrator and every worker pool.

    Transitions mirror the job state machine: `add` creates pending records,
    `claim_due` moves due pending records to active (incrementing attempts),
    and `complete`/`retry`/`fail`/`release`/`cancel` move them on. Each call
    is atomic with respect to concurrent callers on the same store.

    Claims carry a lease. Workers renew the leases of the jobs they are
    running; `reclaim_stale` returns active records whose lease went stale
    (their worker died) to pending with the interrupted attempt still counted.
    """

    async def add(self, record: JobRecord) -> bool:
        """Insert a pending record; False when a record with this id is pending or active."""
        ...

    async def claim_due(
        self, job_type: JobType, now: datetime, limit: int, *, owner: str | None = None
    ) -> list[JobRecord]:
        ...

    async def renew_leases(self, job_type: JobType, job_ids: list[str], now: datetime) -> None:
        ...

    async def reclaim_stale(self, job_type: JobType, *, older_than: datetime, now: datetime) -> list[JobRecord]:
        """Return active records leased at or before `older_than` to pending, due at `now`."""
        ...

    async def complete(self, job_id: str, *, result: Any, now: datetime) -> JobRecord | None:
        ...

    async def retry(self, job_id: str, *, error: str, retry_at: datetime, now: datetime) -> JobRecord | None:
        ...

    async def fail(self, job_id: str, *, error: str, now: datetime) -> JobRecord | None:
        ...

    async def release(self, job_id: str, *, now: datetime) -> JobRecord | None:
        """Return an active record to pending without counting the interrupted attempt."""
        ...

    async def cancel(self, job_id: str, *, now: datetime) -> bool:
        """Cancel a pending record; active and finished records are left untouched."""
        ...

    async def get(self, job_id: str) -> JobRecord | None:
        ...

    async def counts(self, job_type: JobType, now: datetime) -> dict[str, int]:
        ...

    async def set_recurrence(self, recurrence_id: str, job_id: str) -> None:
        ...

    async def get_recurrence(self, recurrence_id: str) -> str | None:
        ...

    async def delete_recurrence(self, recurrence_id: str) -> None:
        ...

    async def purge_finished(self, cutoff: datetime) -> int:
        ...

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


class MemoryJobStore:
    """Process-local job store for inline mode and tests.

    No method awaits while mutating, so each transition is atomic on the
    event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, JobRecord] = {}
        # Insertion sequence breaks ties between records due at the same instant.
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._recurrences: dict[str, str] = {}
        self._closed = False

    async def add(self, record: JobRecord) -> bool:
        existing = self._records.get(record.id)
        if existing is not None and existing.status in IN_FLIGHT_STATUSES:
            return False
        self._records[record.id] = record.model_copy(update={"status": JobStatus.PENDING})
        self._sequence[record.id] = self._next_sequence
        self._next_sequence += 1
        return True

    async def claim_due(
        self, job_type: JobType, now: datetime, limit: int, *, owner: str | None = None
    ) -> list[JobRecord]:
        if limit <= 0:
            return []
        due = [
            record
            for record in self._records.values()
            if record.job_type == job_type
            and record.status == JobStatus.PENDING
            and record.scheduled_at <= now
        ]
        due.sort(key=lambda record: (record.scheduled_at, self._sequence[record.id]))
        claimed: list[JobRecord] = []
        for record in due[:limit]:
            updated = record.model_copy(
                update={
                    "status": JobStatus.ACTIVE,
                    "attempts": record.attempts + 1,
                    "updated_at": now,
                    "lease_owner": owner,
                    "leased_at": now,
                }
            )
            self._records[record.id] = updated
            claimed.append(updated)
        return claimed

    async def renew_leases(self, job_type: JobType, job_ids: list[str], now: datetime) -> None:
        for job_id in job_ids:
            current = self._records.get(job_id)
            if current is not None and current.job_type == job_type and current.status == JobStatus.ACTIVE:
                self._records[job_id] = current.model_copy(update={"leased_at": now})

    async def reclaim_stale(self, job_type: JobType, *, older_than: datetime, now: datetime) -> list[JobRecord]:
        reclaimed: list[JobRecord] = []
        for job_id, record in list(self._records.items()):
            if record.job_type != job_type or record.status != JobStatus.ACTIVE:
                continue
            if (record.leased_at or record.updated_at) > older_than:
                continue
            updated = record.model_copy(
                update={
                    "status": JobStatus.PENDING,
                    "scheduled_at": now,
                    "updated_at": now,
                    "lease_owner": None,
                    "leased_at": None,
                }
            )
            self._records[job_id] = updated
            self._sequence[job_id] = self._next_sequence
            self._next_sequence += 1
            reclaimed.append(updated)
        return reclaimed

    async def complete(self, job_id: str, *, result: Any, now: datetime) -> JobRecord | None:
        return self._transition(
            job_id,
            JobStatus.COMPLETED,
            {"result": result, "finished_at": now, "updated_at": now, "last_error": None},
        )

    async def retry(self, job_id: str, *, error: str, retry_at: datetime, now: datetime) -> JobRecord | None:
        record = self._transition(
            job_id,
            JobStatus.PENDING,
            {"last_error": error, "scheduled_at": retry_at, "updated_at": now},
        )
        if record is not None:
            self._sequence[job_id] = self._next_sequence
            self._next_sequence += 1
        return record

    async def fail(self, job_id: str, *, error: str, now: datetime) -> JobRecord | None:
        return self._transition(
            job_id,
            JobStatus.FAILED,
            {"last_error": error, "finished_at": now, "updated_at": now},
        )

    async def release(self, job_id: str, *, now: datetime) -> JobRecord | None:
        current = self._records.get(job_id)
        if current is None or current.status != JobStatus.ACTIVE:
            return None
        return self._transition(
            job_id,
            JobStatus.PENDING,
            {"attempts": max(0, current.attempts - 1), "scheduled_at": now, "updated_at": now},
        )

    async def cancel(self, job_id: str, *, now: datetime) -> bool:
        current = self._records.get(job_id)
        if current is None or current.status != JobStatus.PENDING:
            return False
        self._records[job_id] = current.model_copy(
            update={"status": JobStatus.CANCELLED, "finished_at": now, "updated_at": now}
        )
        return True

    async def get(self, job_id: str) -> JobRecord | None:
        return self._records.get(job_id)

    async def counts(self, job_type: JobType, now: datetime) -> dict[str, int]:
        counts = empty_counts()
        for record in self._records.values():
            if record.job_type != job_type:
                continue
            if record.status == JobStatus.PENDING:
                counts["waiting"] += 1
                if record.scheduled_at > now:
                    counts["delayed"] += 1
            else:
                counts[record.status.value] += 1
        return counts

    async def set_recurrence(self, recurrence_id: str, job_id: str) -> None:
        self._recurrences[recurrence_id] = job_id

    async def get_recurrence(self, recurrence_id: str) -> str | None:
        return self._recurrences.get(recurrence_id)

    async def delete_recurrence(self, recurrence_id: str) -> None:
        self._recurrences.pop(recurrence_id, None)

    async def purge_finished(self, cutoff: datetime) -> int:
        stale = [
            job_id
            for job_id, record in self._records.items()
            if record.is_terminal and record.finished_at is not None and record.finished_at < cutoff
        ]
        for job_id in stale:
            del self._records[job_id]
            self._sequence.pop(job_id, None)
        return len(stale)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _transition(self, job_id: str, status: JobStatus, update: dict[str, Any]) -> JobRecord | None:
        # Only active records move on to completed, retried or failed.
        current = self._records.get(job_id)
        if current is None or current.status != JobStatus.ACTIVE:
            return None
        updated = current.model_copy(update={"status": status, "lease_owner": None, "leased_at": None, **update})
        self._records[job_id] = updated
        return updated
