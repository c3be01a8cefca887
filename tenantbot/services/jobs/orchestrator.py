from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping

from croniter import croniter
from pydantic import BaseModel

from tenantbot.core.config import Settings
from tenantbot.core.errors import JobInterruptedError, JobScheduleError, OrchestratorClosedError
from tenantbot.domain.jobs import (
    IN_FLIGHT_STATUSES,
    JobPayload,
    JobRecord,
    JobStatus,
    JobType,
    Recurrence,
    parse_job_type,
    parse_payload,
)
from tenantbot.services.jobs.pool import WorkerPool
from tenantbot.services.jobs.rate_limit import RateLimiter
from tenantbot.services.jobs.store import JobStore
from tenantbot.services.resilience import exponential_backoff_ms
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

JobHandler = Callable[[JobPayload], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    """Next cron firing strictly after `after` (UTC)."""
    try:
        schedule = croniter(cron_expression, after)
    except (ValueError, KeyError) as exc:
        raise JobScheduleError(f"Invalid cron expression: {cron_expression}") from exc
    fire = schedule.get_next(datetime)
    if fire.tzinfo is None:
        fire = fire.replace(tzinfo=timezone.utc)
    return fire


def occurrence_id(recurrence_id: str, fire_at: datetime) -> str:
    # One occurrence key per recurrence per firing instant.
    return f"{recurrence_id}@{int(fire_at.timestamp())}"


def _serializable_result(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.asdict(result)
    return result


class JobOrchestrator:
    """Schedules typed jobs and runs them on one worker pool per job type.

    Records move pending -> active -> completed, or back to pending with
    exponential backoff until `max_attempts` is spent, then to failed.
    Recurring jobs keep a single pending/active occurrence per recurrence
    id; the next occurrence is armed when the current one finishes.

    Claims are leased to this orchestrator. Jobs left active by a worker
    that died are reclaimed once their lease goes stale, at startup and by
    the running pools, and a job interrupted on its final attempt fails.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        metrics: MetricsRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        concurrency_default: int = 5,
        concurrency_overrides: Mapping[str, int] | None = None,
        max_attempts: int = 3,
        backoff_base_ms: int = 2000,
        poll_interval_s: float = 1.0,
        shutdown_timeout_s: float = 30.0,
        lease_timeout_s: float = 300.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._concurrency_default = max(1, concurrency_default)
        self._concurrency_overrides = dict(concurrency_overrides or {})
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_ms = max(0, backoff_base_ms)
        self._poll_interval_s = poll_interval_s
        self._shutdown_timeout_s = shutdown_timeout_s
        self._lease_timeout_s = lease_timeout_s
        self._clock = clock or _utc_now
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._handlers: dict[JobType, JobHandler] = {}
        self._pools: dict[JobType, WorkerPool] = {}
        self._started = False
        self._closing = False
        self._queues_closed = False
        self._closed = False
        if metrics is not None:
            metrics.describe("jobs_completed_total", "Jobs completed per job type")
            metrics.describe("jobs_failed_total", "Jobs that exhausted their attempts")
            metrics.describe("job_duration_seconds", "Handler run time per job type")
            metrics.describe("queue_depth", "Jobs per queue and status")
            metrics.describe("jobs_reclaimed_total", "Active jobs returned to pending after their lease went stale")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: JobStore,
        *,
        metrics: MetricsRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> "JobOrchestrator":
        return cls(
            store,
            metrics=metrics,
            rate_limiter=rate_limiter,
            concurrency_default=settings.job_concurrency_default,
            concurrency_overrides=settings.job_concurrency_overrides(),
            max_attempts=settings.job_default_max_attempts,
            backoff_base_ms=settings.job_backoff_base_ms,
            poll_interval_s=settings.job_poll_interval_ms / 1000.0,
            shutdown_timeout_s=settings.job_shutdown_timeout_s,
            lease_timeout_s=settings.job_lease_timeout_s,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def closing(self) -> bool:
        return self._closing

    def register_handler(self, job_type: JobType | str, handler: JobHandler) -> None:
        resolved = parse_job_type(job_type)
        if resolved in self._handlers:
            raise JobScheduleError(f"Handler already registered for {resolved.value}")
        self._handlers[resolved] = handler
        if self._started and not self._closing:
            self._start_pool(resolved)

    def concurrency_for(self, job_type: JobType) -> int:
        return self._concurrency_overrides.get(job_type.value, self._concurrency_default)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for job_type in JobType:
            # Recover jobs a previous process left active before any pool claims work.
            await self._reclaim_stale(job_type)
            if job_type in self._handlers:
                self._start_pool(job_type)
            else:
                logger.warning("job_handler_missing job_type=%s", job_type.value)
        logger.info("orchestrator_started pools=%s", ",".join(sorted(t.value for t in self._pools)))

    async def schedule(
        self,
        job_type: JobType | str,
        payload: Any,
        *,
        delay_ms: int | None = None,
        cron_expression: str | None = None,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Validate and enqueue a job; returns its id.

        `delay_ms` and `cron_expression` are mutually exclusive; with neither
        the job is due immediately. For cron schedules `job_id` names the
        recurrence and the returned id is the armed occurrence.
        """
        if self._queues_closed or self._closed:
            raise OrchestratorClosedError("job queues are closed")
        resolved = parse_job_type(job_type)
        if delay_ms is not None and cron_expression is not None:
            raise JobScheduleError("delay_ms and cron_expression are mutually exclusive")
        if delay_ms is not None and delay_ms < 0:
            raise JobScheduleError("delay_ms must be non-negative")
        parsed = parse_payload(resolved, payload)
        attempts = max(1, max_attempts or self._max_attempts)
        if cron_expression is not None:
            recurrence_id = job_id or f"{resolved.value}:{uuid.uuid4().hex}"
            return await self._schedule_recurring(resolved, parsed, cron_expression, recurrence_id, attempts)

        now = self._clock()
        scheduled_at = now + timedelta(milliseconds=delay_ms or 0)
        record = JobRecord(
            id=job_id or uuid.uuid4().hex,
            job_type=resolved,
            payload=parsed,
            max_attempts=attempts,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        added = await self._store.add(record)
        if not added:
            # Explicit ids de-duplicate while the earlier job is pending or active.
            logger.info("job_deduplicated job_id=%s job_type=%s", record.id, resolved.value)
            return record.id
        logger.info(
            "job_scheduled job_id=%s job_type=%s delay_ms=%s",
            record.id,
            resolved.value,
            delay_ms or 0,
        )
        self._wake(resolved)
        return record.id

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job or a whole recurring series; active jobs are never interrupted."""
        now = self._clock()
        current = await self._store.get_recurrence(job_id)
        if current is not None:
            await self._store.delete_recurrence(job_id)
            cancelled_current = await self._store.cancel(current, now=now)
            logger.info(
                "recurrence_cancelled recurrence_id=%s occurrence=%s occurrence_cancelled=%s",
                job_id,
                current,
                cancelled_current,
            )
            return True
        record = await self._store.get(job_id)
        cancelled = await self._store.cancel(job_id, now=now)
        if cancelled and record is not None and record.recurrence is not None:
            # Cancelling the armed occurrence ends its series too.
            recurrence_id = record.recurrence.recurrence_id
            if await self._store.get_recurrence(recurrence_id) == job_id:
                await self._store.delete_recurrence(recurrence_id)
        if cancelled:
            logger.info("job_cancelled job_id=%s", job_id)
        return cancelled

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self._store.get(job_id)

    async def stats(self) -> dict[str, dict[str, int]]:
        now = self._clock()
        result: dict[str, dict[str, int]] = {}
        for job_type in JobType:
            counts = await self._store.counts(job_type, now)
            result[job_type.value] = counts
            if self._metrics is not None:
                for status, value in counts.items():
                    self._metrics.set_gauge("queue_depth", value, labels={"job_type": job_type.value, "status": status})
        return result

    async def purge_finished(self, older_than: datetime) -> int:
        purged = await self._store.purge_finished(older_than)
        logger.info("finished_jobs_purged purged=%s cutoff=%s", purged, older_than.isoformat())
        return purged

    async def ping(self) -> None:
        await self._store.ping()

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Pause, drain, close queues, abandon stragglers, then close the backend."""
        if self._closed or self._closing:
            return
        self._closing = True
        timeout = self._shutdown_timeout_s if timeout_s is None else timeout_s
        pools = list(self._pools.values())
        # Stop dequeuing everywhere first; schedules still persist but are never picked up here.
        for pool in pools:
            pool.pause()
        logger.info("orchestrator_draining pools=%s timeout_s=%s", len(pools), timeout)
        drained = await asyncio.gather(*(pool.drain(timeout) for pool in pools))
        self._queues_closed = True
        logger.info("job_queues_closed")
        for pool in pools:
            await pool.close()
        if not all(drained):
            now = self._clock()
            for pool in pools:
                for job_id in await pool.abandon():
                    await self._store.release(job_id, now=now)
                    if self._metrics is not None:
                        self._metrics.increment_counter("jobs_abandoned_total", labels={"job_type": pool.job_type.value})
                    logger.warning(
                        "job_abandoned_at_shutdown job_id=%s job_type=%s",
                        job_id,
                        pool.job_type.value,
                    )
        self._pools.clear()
        await self._store.close()
        self._closed = True
        logger.info("orchestrator_stopped")

    def _start_pool(self, job_type: JobType) -> None:
        pool = WorkerPool(
            job_type,
            self._store,
            self._run,
            concurrency=self.concurrency_for(job_type),
            poll_interval_s=self._poll_interval_s,
            lease_s=self._lease_timeout_s,
            owner=self._owner,
            on_reclaimed=self._record_reclaimed,
            clock=self._clock,
        )
        self._pools[job_type] = pool
        pool.start()

    async def _reclaim_stale(self, job_type: JobType) -> None:
        now = self._clock()
        older_than = now - timedelta(seconds=self._lease_timeout_s)
        for record in await self._store.reclaim_stale(job_type, older_than=older_than, now=now):
            self._record_reclaimed(record)

    def _record_reclaimed(self, record: JobRecord) -> None:
        if self._metrics is not None:
            self._metrics.increment_counter("jobs_reclaimed_total", labels={"job_type": record.job_type.value})
        logger.warning(
            "job_lease_expired_reclaimed job_id=%s job_type=%s attempts=%s",
            record.id,
            record.job_type.value,
            record.attempts,
        )

    def _wake(self, job_type: JobType) -> None:
        pool = self._pools.get(job_type)
        if pool is not None and not self._closing:
            pool.wake()

    async def _schedule_recurring(
        self,
        job_type: JobType,
        payload: JobPayload,
        cron_expression: str,
        recurrence_id: str,
        max_attempts: int,
    ) -> str:
        # An occurrence stranded active by a dead worker becomes pending again and is kept.
        await self._reclaim_stale(job_type)
        now = self._clock()
        fire_at = next_fire_time(cron_expression, now)
        current_id = await self._store.get_recurrence(recurrence_id)
        if current_id is not None:
            current = await self._store.get(current_id)
            if (
                current is not None
                and current.status in IN_FLIGHT_STATUSES
                and current.recurrence is not None
                and current.recurrence.cron_expression == cron_expression
            ):
                # Re-registering an existing series (e.g. on every boot) keeps its armed occurrence.
                return current_id
            if current is not None and current.status == JobStatus.PENDING:
                await self._store.cancel(current_id, now=now)
        record = self._occurrence(job_type, payload, recurrence_id, cron_expression, fire_at, max_attempts, now)
        added = await self._store.add(record)
        await self._store.set_recurrence(recurrence_id, record.id)
        logger.info(
            "recurrence_armed recurrence_id=%s occurrence=%s cron=%s added=%s",
            recurrence_id,
            record.id,
            cron_expression,
            added,
        )
        self._wake(job_type)
        return record.id

    def _occurrence(
        self,
        job_type: JobType,
        payload: JobPayload,
        recurrence_id: str,
        cron_expression: str,
        fire_at: datetime,
        max_attempts: int,
        now: datetime,
    ) -> JobRecord:
        return JobRecord(
            id=occurrence_id(recurrence_id, fire_at),
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts,
            scheduled_at=fire_at,
            created_at=now,
            updated_at=now,
            recurrence=Recurrence(recurrence_id=recurrence_id, cron_expression=cron_expression),
        )

    async def _arm_next(self, record: JobRecord) -> None:
        recurrence = record.recurrence
        if recurrence is None:
            return
        # A cancelled or re-registered series no longer points at this occurrence.
        if await self._store.get_recurrence(recurrence.recurrence_id) != record.id:
            return
        now = self._clock()
        # Missed firings while the occurrence ran are skipped, not replayed.
        fire_at = next_fire_time(recurrence.cron_expression, max(now, record.scheduled_at))
        upcoming = self._occurrence(
            record.job_type,
            record.payload,
            recurrence.recurrence_id,
            recurrence.cron_expression,
            fire_at,
            record.max_attempts,
            now,
        )
        await self._store.add(upcoming)
        await self._store.set_recurrence(recurrence.recurrence_id, upcoming.id)
        logger.debug("recurrence_rearmed recurrence_id=%s occurrence=%s", recurrence.recurrence_id, upcoming.id)

    async def _run(self, record: JobRecord) -> None:
        handler = self._handlers.get(record.job_type)
        job_type = record.job_type.value
        if handler is None:
            await self._handle_failure(record, JobScheduleError(f"No handler registered for {job_type}"))
            return
        if record.attempts > record.max_attempts:
            # Claimed again after its worker died on the final attempt.
            await self._handle_failure(
                record,
                JobInterruptedError(f"interrupted after {record.max_attempts} attempts"),
            )
            return
        guard = self._rate_limiter.guard_for(record) if self._rate_limiter is not None else None
        if guard is not None:
            try:
                await guard.acquire()
            except Exception as exc:  # noqa: BLE001 - a closed rate guard fails the attempt
                await self._handle_failure(record, exc)
                return
        start = time.monotonic()
        try:
            result = await handler(record.payload)
        except asyncio.CancelledError:
            # Shutdown abandoned this job; the orchestrator releases it back to pending.
            raise
        except Exception as exc:  # noqa: BLE001 - handler failures feed the retry policy
            self._observe_duration(job_type, start)
            await self._handle_failure(record, exc)
            return
        self._observe_duration(job_type, start)
        try:
            finished = await self._store.complete(record.id, result=_serializable_result(result), now=self._clock())
        except Exception as exc:  # noqa: BLE001 - a lost write must not strand the record as active
            await self._release_after_write_error(record, "complete", exc)
            return
        if self._metrics is not None:
            self._metrics.increment_counter("jobs_completed_total", labels={"job_type": job_type})
        logger.info("job_completed job_id=%s job_type=%s attempts=%s", record.id, job_type, record.attempts)
        await self._arm_next(finished or record)

    async def _handle_failure(self, record: JobRecord, exc: Exception) -> None:
        now = self._clock()
        error = f"{type(exc).__name__}: {exc}"
        job_type = record.job_type.value
        if record.attempts < record.max_attempts:
            delay_ms = exponential_backoff_ms(self._backoff_base_ms, record.attempts)
            try:
                await self._store.retry(
                    record.id,
                    error=error,
                    retry_at=now + timedelta(milliseconds=delay_ms),
                    now=now,
                )
            except Exception as write_exc:  # noqa: BLE001 - a lost write must not strand the record as active
                await self._release_after_write_error(record, "retry", write_exc)
                return
            logger.warning(
                "job_retry_scheduled job_id=%s job_type=%s attempt=%s max_attempts=%s delay_ms=%s error=%s",
                record.id,
                job_type,
                record.attempts,
                record.max_attempts,
                delay_ms,
                error,
            )
            return
        try:
            failed = await self._store.fail(record.id, error=error, now=now)
        except Exception as write_exc:  # noqa: BLE001 - a lost write must not strand the record as active
            await self._release_after_write_error(record, "fail", write_exc)
            return
        if self._metrics is not None:
            self._metrics.increment_counter("jobs_failed_total", labels={"job_type": job_type})
        logger.error(
            "job_failed job_id=%s job_type=%s attempts=%s error=%s",
            record.id,
            job_type,
            record.attempts,
            error,
            exc_info=exc,
        )
        await self._arm_next(failed or record)

    async def _release_after_write_error(self, record: JobRecord, transition: str, exc: Exception) -> None:
        logger.error(
            "job_transition_failed job_id=%s job_type=%s transition=%s",
            record.id,
            record.job_type.value,
            transition,
            exc_info=exc,
        )
        try:
            await self._store.release(record.id, now=self._clock())
        except Exception:  # noqa: BLE001 - the stale lease is reclaimed later
            logger.exception("job_release_failed job_id=%s", record.id)

    def _observe_duration(self, job_type: str, start: float) -> None:
        if self._metrics is not None:
            self._metrics.observe("job_duration_seconds", time.monotonic() - start, labels={"job_type": job_type})
