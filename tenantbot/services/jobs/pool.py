from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from tenantbot.domain.jobs import JobRecord, JobType
from tenantbot.services.jobs.store import JobStore


logger = logging.getLogger(__name__)

JobRunner = Callable[[JobRecord], Awaitable[None]]
ReclaimHook = Callable[[JobRecord], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkerPool:
    """Dequeues one job type and runs up to `concurrency` jobs at a time.

    The pool only moves records from pending to active; the runner owns
    every later transition. Pausing stops dequeuing but leaves running
    jobs alone.

    Every third of the lease period the pool renews the leases of its
    running jobs and returns jobs whose lease went stale (a dead worker's)
    to pending.
    """

    def __init__(
        self,
        job_type: JobType,
        store: JobStore,
        runner: JobRunner,
        *,
        concurrency: int,
        poll_interval_s: float,
        lease_s: float = 300.0,
        owner: str | None = None,
        on_reclaimed: ReclaimHook | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.job_type = job_type
        self._store = store
        self._runner = runner
        self._concurrency = max(1, concurrency)
        self._poll_interval_s = max(0.001, poll_interval_s)
        self._clock = clock or _utc_now
        self._lease = timedelta(seconds=max(0.001, lease_s))
        self._owner = owner
        self._on_reclaimed = on_reclaimed
        self._last_lease_check: datetime | None = None
        self._active: dict[str, asyncio.Task[None]] = {}
        self._wake = asyncio.Event()
        self._slot_freed = asyncio.Event()
        self._paused = False
        self._closed = False
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._active)

    def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._poll_loop(), name=f"worker-pool:{self.job_type.value}")

    def wake(self) -> None:
        # Skip the rest of the poll interval after a new job is scheduled.
        self._wake.set()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._wake.set()

    async def drain(self, timeout_s: float) -> bool:
        """Wait for running jobs; True when all finished within the timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        # Re-check after each wait: a claim in flight when pause() ran can still spawn a job.
        while self._active:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.wait(set(self._active.values()), timeout=remaining)
        return True

    async def close(self) -> None:
        # Stop the dequeue loop; running jobs are handled by drain/abandon.
        self._closed = True
        self._wake.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def abandon(self) -> list[str]:
        """Cancel jobs still running after the drain timeout; returns their ids."""
        abandoned = list(self._active)
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return abandoned

    async def _poll_loop(self) -> None:
        while not self._closed:
            await self._maintain_leases()
            # Bounded waits keep lease upkeep running while paused or saturated.
            if self._paused:
                await self._wait_for(self._wake, self._poll_interval_s)
                continue
            free = self._concurrency - len(self._active)
            if free <= 0:
                await self._wait_for(self._slot_freed, self._poll_interval_s)
                continue
            try:
                records = await self._store.claim_due(self.job_type, self._clock(), free, owner=self._owner)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the pool alive through backend blips
                logger.exception("job_claim_failed job_type=%s", self.job_type.value)
                records = []
            for record in records:
                self._spawn(record)
            if not records:
                await self._wait_for(self._wake, self._poll_interval_s)

    async def _maintain_leases(self) -> None:
        now = self._clock()
        if self._last_lease_check is not None and now - self._last_lease_check < self._lease / 3:
            return
        self._last_lease_check = now
        try:
            # Renew first so this pool never reclaims its own running jobs.
            if self._active:
                await self._store.renew_leases(self.job_type, list(self._active), now)
            reclaimed = await self._store.reclaim_stale(self.job_type, older_than=now - self._lease, now=now)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep the pool alive through backend blips
            logger.exception("job_lease_upkeep_failed job_type=%s", self.job_type.value)
            return
        for record in reclaimed:
            if self._on_reclaimed is not None:
                self._on_reclaimed(record)
        if reclaimed:
            self._wake.set()

    def _spawn(self, record: JobRecord) -> None:
        task = asyncio.create_task(self._runner(record), name=f"job:{record.id}")
        self._active[record.id] = task

        def _done(finished: asyncio.Task[None], job_id: str = record.id) -> None:
            self._active.pop(job_id, None)
            self._slot_freed.set()
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "job_runner_crashed job_id=%s job_type=%s",
                    job_id,
                    self.job_type.value,
                    exc_info=finished.exception(),
                )

        task.add_done_callback(_done)

    async def _wait_for(self, event: asyncio.Event, timeout_s: float | None) -> None:
        try:
            if timeout_s is None:
                await event.wait()
            else:
                await asyncio.wait_for(event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            pass
        finally:
            event.clear()
