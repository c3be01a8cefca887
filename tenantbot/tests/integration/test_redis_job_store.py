from __future__ import annotations

import os
import uuid
from datetime import timedelta

import pytest

from tenantbot.core.config import Settings
from tenantbot.domain.jobs import JobRecord, JobStatus, JobType, parse_payload
from tenantbot.services.jobs.rate_limit import RedisSlidingWindowGuard
from tenantbot.services.jobs.redis_store import RedisJobStore, create_job_redis
from tenantbot.tests.utils.fakes import FakeClock


REDIS_URL = os.getenv("TENANTBOT_TEST_REDIS_URL")

pytestmark = pytest.mark.skipif(not REDIS_URL, reason="TENANTBOT_TEST_REDIS_URL not set")


@pytest.fixture
async def store():
    prefix = f"tenantbot-test:{uuid.uuid4().hex}"
    redis = await create_job_redis(Settings(redis_url=REDIS_URL, redis_conn_retries=0))
    store = RedisJobStore(redis, prefix=prefix)
    yield store
    keys = [key async for key in redis.scan_iter(match=f"{prefix}:*")]
    if keys:
        await redis.delete(*keys)
    await store.close()


def _record(job_id: str, scheduled_at, max_attempts: int = 3) -> JobRecord:
    return JobRecord(
        id=job_id,
        job_type=JobType.CLEANUP,
        payload=parse_payload(JobType.CLEANUP, {"targetType": "old_logs", "olderThan": "P1D"}),
        scheduled_at=scheduled_at,
        max_attempts=max_attempts,
    )


@pytest.mark.asyncio
async def test_claim_complete_and_counts(store) -> None:
    clock = FakeClock()
    assert await store.add(_record("due", clock.now)) is True
    assert await store.add(_record("due", clock.now)) is False
    assert await store.add(_record("later", clock.now + timedelta(minutes=5))) is True

    counts = await store.counts(JobType.CLEANUP, clock.now)
    assert counts["waiting"] == 2
    assert counts["delayed"] == 1

    claimed = await store.claim_due(JobType.CLEANUP, clock.now, 10)
    assert [record.id for record in claimed] == ["due"]
    assert claimed[0].attempts == 1
    assert await store.cancel("due", now=clock.now) is False

    finished = await store.complete("due", result={"deleted": 4}, now=clock.now)
    assert finished.status == JobStatus.COMPLETED
    counts = await store.counts(JobType.CLEANUP, clock.now)
    assert counts["completed"] == 1
    assert counts["active"] == 0


@pytest.mark.asyncio
async def test_retry_release_cancel_and_purge(store) -> None:
    clock = FakeClock()
    await store.add(_record("job", clock.now))
    await store.claim_due(JobType.CLEANUP, clock.now, 1)
    retried = await store.retry("job", error="boom", retry_at=clock.now + timedelta(seconds=2), now=clock.now)
    assert retried.status == JobStatus.PENDING
    assert await store.claim_due(JobType.CLEANUP, clock.now, 1) == []

    clock.advance(seconds=2)
    claimed = await store.claim_due(JobType.CLEANUP, clock.now, 1)
    assert claimed[0].attempts == 2
    released = await store.release("job", now=clock.now)
    assert released.attempts == 1

    assert await store.cancel("job", now=clock.now) is True
    assert (await store.get("job")).status == JobStatus.CANCELLED

    await store.set_recurrence("series", "job")
    assert await store.get_recurrence("series") == "job"
    await store.delete_recurrence("series")
    assert await store.get_recurrence("series") is None

    assert await store.purge_finished(clock.now + timedelta(seconds=1)) == 1
    assert await store.get("job") is None


@pytest.mark.asyncio
async def test_stale_leases_are_reclaimed_and_renewed_ones_kept(store) -> None:
    clock = FakeClock()
    await store.add(_record("kept", clock.now))
    await store.add(_record("stale", clock.now))
    claimed = await store.claim_due(JobType.CLEANUP, clock.now, 2, owner="worker-a")
    assert {record.lease_owner for record in claimed} == {"worker-a"}

    clock.advance(minutes=4)
    await store.renew_leases(JobType.CLEANUP, ["kept"], clock.now)
    clock.advance(minutes=2)
    reclaimed = await store.reclaim_stale(JobType.CLEANUP, older_than=clock.now - timedelta(minutes=5), now=clock.now)

    assert [record.id for record in reclaimed] == ["stale"]
    stale = await store.get("stale")
    assert stale.status == JobStatus.PENDING
    assert stale.attempts == 1
    assert stale.lease_owner is None
    assert (await store.get("kept")).status == JobStatus.ACTIVE
    counts = await store.counts(JobType.CLEANUP, clock.now)
    assert counts["active"] == 1
    assert counts["waiting"] == 1

    again = await store.claim_due(JobType.CLEANUP, clock.now, 1, owner="worker-b")
    assert [(record.id, record.attempts, record.lease_owner) for record in again] == [("stale", 2, "worker-b")]


@pytest.mark.asyncio
async def test_rate_window_is_shared_between_workers(store) -> None:
    now = {"t": 1_000.0}
    key = f"{uuid.uuid4().hex}:rl:platform-bot"
    workers = [
        RedisSlidingWindowGuard("platform-bot", 2, store.redis, key=key, time_provider=lambda: now["t"])
        for _ in range(2)
    ]
    try:
        assert await workers[0].try_acquire() == 0
        now["t"] += 10
        assert await workers[1].try_acquire() == 0
        assert await workers[0].try_acquire() == pytest.approx(50.0)
        assert await workers[1].try_acquire() == pytest.approx(50.0)

        now["t"] += 50
        assert await workers[1].try_acquire() == 0
        assert await workers[0].try_acquire() == pytest.approx(10.0)
    finally:
        await store.redis.delete(key)
