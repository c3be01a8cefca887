"""Redis job backend for the worker pools.

arq supplies the connection (`create_pool` with DSN parsing and startup
retries) but not the queue protocol. arq's worker loop deletes or runs a job
once enqueued and retries through `Retry`/`max_tries`; it cannot cancel a job
only while it is still pending, report per-status queue depth, or pause
dequeuing and drain before closing the pools. The queue here is therefore a
small set of Lua scripts: atomic add with id de-duplication, atomic claim
into a leased active set, and lease reclaim for jobs whose worker died.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from tenantbot.core.config import Settings
from tenantbot.domain.jobs import JobRecord, JobStatus, JobType
from tenantbot.services.jobs.store import empty_counts


logger = logging.getLogger(__name__)

_FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# Insert a pending record unless the same id is already pending or active.
_ADD_LUA = r"""
local status = redis.call("HGET", KEYS[2], ARGV[1])
if status == "pending" or status == "active" then
  return 0
end
redis.call("ZREM", KEYS[4], ARGV[1])
redis.call("ZREM", KEYS[5], ARGV[1])
redis.call("ZREM", KEYS[6], ARGV[1])
redis.call("SET", KEYS[1], ARGV[2])
redis.call("HSET", KEYS[2], ARGV[1], "pending")
redis.call("ZADD", KEYS[3], ARGV[3], ARGV[1])
return 1
"""

# Move up to ARGV[2] due ids from the pending queue to the active set.
_CLAIM_LUA = r"""
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
  redis.call("ZREM", KEYS[1], id)
  redis.call("ZADD", KEYS[2], ARGV[1], id)
  redis.call("HSET", KEYS[3], id, "active")
end
return ids
"""

# Move active ids whose lease score is at or before ARGV[1] back to the queue, due at ARGV[2].
_RECLAIM_LUA = r"""
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(ids) do
  redis.call("ZREM", KEYS[1], id)
  redis.call("ZADD", KEYS[2], ARGV[2], id)
  redis.call("HSET", KEYS[3], id, "pending")
end
return ids
"""

# Rewrite a reclaimed record body unless a worker has claimed it again meanwhile.
_WRITE_IF_PENDING_LUA = r"""
if redis.call("HGET", KEYS[2], ARGV[1]) ~= "pending" then
  return 0
end
if not redis.call("ZSCORE", KEYS[3], ARGV[1]) then
  return 0
end
redis.call("SET", KEYS[1], ARGV[2])
return 1
"""

# Cancel only while the id is still queued; a claimed job is never cancelled.
_CANCEL_LUA = r"""
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call("HSET", KEYS[2], ARGV[1], "cancelled")
redis.call("ZADD", KEYS[3], ARGV[2], ARGV[1])
return 1
"""


def _text(value: Any) -> str:
    # arq pools return bytes; normalize before parsing.
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)


def _score(value: datetime) -> int:
    return int(value.timestamp() * 1000)


async def create_job_redis(settings: Settings) -> ArqRedis:
    # Reuse arq's connection bootstrap (DSN parsing, startup retries) for the job backend.
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    redis_settings.conn_retries = max(0, int(settings.redis_conn_retries))
    return await create_pool(redis_settings)


class RedisJobStore:
    """Redis-backed job store.

    Layout under the configured prefix: one JSON string per job, a status
    hash, a pending sorted set per job type scored by due time, an active
    sorted set per job type scored by lease time, finished sorted sets per
    type and status scored by finish time, and a hash mapping recurrence
    ids to their current occurrence.
    """

    def __init__(self, redis: ArqRedis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix.rstrip(":")

    @classmethod
    async def connect(cls, settings: Settings) -> "RedisJobStore":
        redis = await create_job_redis(settings)
        logger.info("job_store_connected prefix=%s", settings.job_queue_prefix)
        return cls(redis, prefix=settings.job_queue_prefix)

    @property
    def redis(self) -> ArqRedis:
        return self._redis

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _status_key(self) -> str:
        return f"{self._prefix}:status"

    def _queue_key(self, job_type: JobType) -> str:
        return f"{self._prefix}:queue:{job_type.value}"

    def _active_key(self, job_type: JobType) -> str:
        return f"{self._prefix}:active:{job_type.value}"

    def _finished_key(self, job_type: JobType, status: JobStatus) -> str:
        return f"{self._prefix}:finished:{job_type.value}:{status.value}"

    def _recurrence_key(self) -> str:
        return f"{self._prefix}:recurrence"

    async def add(self, record: JobRecord) -> bool:
        pending = record.model_copy(update={"status": JobStatus.PENDING})
        added = await self._redis.eval(
            _ADD_LUA,
            6,
            self._job_key(record.id),
            self._status_key(),
            self._queue_key(record.job_type),
            *(self._finished_key(record.job_type, status) for status in _FINISHED_STATUSES),
            record.id,
            pending.to_json(),
            _score(record.scheduled_at),
        )
        return int(added) == 1

    async def claim_due(
        self, job_type: JobType, now: datetime, limit: int, *, owner: str | None = None
    ) -> list[JobRecord]:
        if limit <= 0:
            return []
        raw_ids = await self._redis.eval(
            _CLAIM_LUA,
            3,
            self._queue_key(job_type),
            self._active_key(job_type),
            self._status_key(),
            _score(now),
            limit,
        )
        ids = [_text(raw) for raw in raw_ids or []]
        if not ids:
            return []
        raw_records = await self._redis.mget([self._job_key(job_id) for job_id in ids])
        claimed: list[JobRecord] = []
        pipe = self._redis.pipeline(transaction=True)
        for job_id, raw in zip(ids, raw_records):
            if raw is None:
                # Record body vanished (manual purge); drop the dangling id.
                pipe.zrem(self._active_key(job_type), job_id)
                pipe.hdel(self._status_key(), job_id)
                logger.warning("job_record_missing job_id=%s job_type=%s", job_id, job_type.value)
                continue
            record = JobRecord.from_json(_text(raw))
            updated = record.model_copy(
                update={
                    "status": JobStatus.ACTIVE,
                    "attempts": record.attempts + 1,
                    "updated_at": now,
                    "lease_owner": owner,
                    "leased_at": now,
                }
            )
            pipe.set(self._job_key(job_id), updated.to_json())
            claimed.append(updated)
        await pipe.execute()
        return claimed

    async def renew_leases(self, job_type: JobType, job_ids: list[str], now: datetime) -> None:
        if not job_ids:
            return
        # The active set score is the lease; XX leaves ids that already finished alone.
        await self._redis.zadd(self._active_key(job_type), {job_id: _score(now) for job_id in job_ids}, xx=True)

    async def reclaim_stale(self, job_type: JobType, *, older_than: datetime, now: datetime) -> list[JobRecord]:
        raw_ids = await self._redis.eval(
            _RECLAIM_LUA,
            3,
            self._active_key(job_type),
            self._queue_key(job_type),
            self._status_key(),
            _score(older_than),
            _score(now),
        )
        reclaimed: list[JobRecord] = []
        for job_id in (_text(raw) for raw in raw_ids or []):
            record = await self.get(job_id)
            if record is None:
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
            await self._redis.eval(
                _WRITE_IF_PENDING_LUA,
                3,
                self._job_key(job_id),
                self._status_key(),
                self._queue_key(job_type),
                job_id,
                updated.to_json(),
            )
            reclaimed.append(updated)
        return reclaimed

    async def complete(self, job_id: str, *, result: Any, now: datetime) -> JobRecord | None:
        return await self._finish(
            job_id,
            JobStatus.COMPLETED,
            {"result": result, "finished_at": now, "updated_at": now, "last_error": None},
            now,
        )

    async def fail(self, job_id: str, *, error: str, now: datetime) -> JobRecord | None:
        return await self._finish(
            job_id,
            JobStatus.FAILED,
            {"last_error": error, "finished_at": now, "updated_at": now},
            now,
        )

    async def retry(self, job_id: str, *, error: str, retry_at: datetime, now: datetime) -> JobRecord | None:
        current = await self._active_record(job_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={
                "status": JobStatus.PENDING,
                "last_error": error,
                "scheduled_at": retry_at,
                "updated_at": now,
                "lease_owner": None,
                "leased_at": None,
            }
        )
        await self._requeue(updated)
        return updated

    async def release(self, job_id: str, *, now: datetime) -> JobRecord | None:
        current = await self._active_record(job_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={
                "status": JobStatus.PENDING,
                "attempts": max(0, current.attempts - 1),
                "scheduled_at": now,
                "updated_at": now,
                "lease_owner": None,
                "leased_at": None,
            }
        )
        await self._requeue(updated)
        return updated

    async def cancel(self, job_id: str, *, now: datetime) -> bool:
        record = await self.get(job_id)
        if record is None or record.status != JobStatus.PENDING:
            return False
        cancelled = await self._redis.eval(
            _CANCEL_LUA,
            3,
            self._queue_key(record.job_type),
            self._status_key(),
            self._finished_key(record.job_type, JobStatus.CANCELLED),
            job_id,
            _score(now),
        )
        if int(cancelled) != 1:
            return False
        updated = record.model_copy(update={"status": JobStatus.CANCELLED, "finished_at": now, "updated_at": now})
        await self._redis.set(self._job_key(job_id), updated.to_json())
        return True

    async def get(self, job_id: str) -> JobRecord | None:
        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return JobRecord.from_json(_text(raw))

    async def counts(self, job_type: JobType, now: datetime) -> dict[str, int]:
        pipe = self._redis.pipeline(transaction=False)
        pipe.zcard(self._queue_key(job_type))
        pipe.zcount(self._queue_key(job_type), f"({_score(now)}", "+inf")
        pipe.zcard(self._active_key(job_type))
        for status in _FINISHED_STATUSES:
            pipe.zcard(self._finished_key(job_type, status))
        waiting, delayed, active, completed, failed, cancelled = await pipe.execute()
        counts = empty_counts()
        counts.update(
            waiting=int(waiting),
            delayed=int(delayed),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            cancelled=int(cancelled),
        )
        return counts

    async def set_recurrence(self, recurrence_id: str, job_id: str) -> None:
        await self._redis.hset(self._recurrence_key(), recurrence_id, job_id)

    async def get_recurrence(self, recurrence_id: str) -> str | None:
        raw = await self._redis.hget(self._recurrence_key(), recurrence_id)
        return _text(raw) if raw is not None else None

    async def delete_recurrence(self, recurrence_id: str) -> None:
        await self._redis.hdel(self._recurrence_key(), recurrence_id)

    async def purge_finished(self, cutoff: datetime) -> int:
        purged = 0
        for job_type in JobType:
            for status in _FINISHED_STATUSES:
                key = self._finished_key(job_type, status)
                raw_ids = await self._redis.zrangebyscore(key, "-inf", f"({_score(cutoff)}")
                ids = [_text(raw) for raw in raw_ids]
                if not ids:
                    continue
                pipe = self._redis.pipeline(transaction=True)
                pipe.delete(*(self._job_key(job_id) for job_id in ids))
                pipe.hdel(self._status_key(), *ids)
                pipe.zrem(key, *ids)
                await pipe.execute()
                purged += len(ids)
        return purged

    async def ping(self) -> None:
        await self._redis.ping()

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("job_store_closed prefix=%s", self._prefix)

    async def _active_record(self, job_id: str) -> JobRecord | None:
        record = await self.get(job_id)
        if record is None or record.status != JobStatus.ACTIVE:
            return None
        return record

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        update: dict[str, Any],
        now: datetime,
    ) -> JobRecord | None:
        current = await self._active_record(job_id)
        if current is None:
            return None
        updated = current.model_copy(update={"status": status, "lease_owner": None, "leased_at": None, **update})
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._job_key(job_id), updated.to_json())
        pipe.hset(self._status_key(), job_id, status.value)
        pipe.zrem(self._active_key(current.job_type), job_id)
        pipe.zadd(self._finished_key(current.job_type, status), {job_id: _score(now)})
        await pipe.execute()
        return updated

    async def _requeue(self, record: JobRecord) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._job_key(record.id), record.to_json())
        pipe.hset(self._status_key(), record.id, JobStatus.PENDING.value)
        pipe.zrem(self._active_key(record.job_type), record.id)
        pipe.zadd(self._queue_key(record.job_type), {record.id: _score(record.scheduled_at)})
        await pipe.execute()
