from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Mapping, Protocol

from redis.asyncio import Redis

from tenantbot.domain.jobs import ExternalSyncPayload, JobRecord, JobType
from tenantbot.domain.models import CredentialProvider


logger = logging.getLogger(__name__)

WINDOW_S = 60.0

# Downstream provider each job type spends its rate budget against.
_JOB_PROVIDERS: dict[JobType, str] = {
    JobType.REMINDER: CredentialProvider.PLATFORM_BOT.value,
    JobType.DAILY_REPORT: CredentialProvider.PLATFORM_BOT.value,
    JobType.WEEKLY_REPORT: CredentialProvider.PLATFORM_BOT.value,
    JobType.CREDENTIAL_HEALTH_CHECK: CredentialProvider.PLATFORM_BOT.value,
}


# Sliding window over a sorted set of acquisition stamps (ms); returns 0 when a
# slot was taken, otherwise the wait until the oldest stamp leaves the window.
_SLIDING_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", now_ms - window_ms)
if redis.call("ZCARD", KEYS[1]) < limit then
  redis.call("ZADD", KEYS[1], now_ms, ARGV[4])
  redis.call("PEXPIRE", KEYS[1], window_ms)
  return 0
end
local oldest = redis.call("ZRANGE", KEYS[1], 0, 0, "WITHSCORES")
local wait_ms = tonumber(oldest[2]) + window_ms - now_ms
if wait_ms < 1 then
  wait_ms = 1
end
return wait_ms
"""


class RateGuard(Protocol):
    @property
    def name(self) -> str:
        ...

    @property
    def limit(self) -> int:
        ...

    async def acquire(self) -> None:
        ...


class SlidingWindowGuard:
    """Allows at most `limit` operations in any rolling 60 second window.

    Process-local; used when jobs run inline and no Redis is shared.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("rate limit must be at least 1 per window")
        self._name = name
        self._limit = limit
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    def _trim(self, now: float) -> None:
        cutoff = now - WINDOW_S
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def retry_after_s(self) -> float:
        # Time until the oldest operation leaves the window; zero when a slot is free.
        now = self._clock()
        self._trim(now)
        if len(self._stamps) < self._limit:
            return 0.0
        return max(0.0, self._stamps[0] + WINDOW_S - now)

    async def acquire(self) -> None:
        # Waiters queue on the lock so slots are granted in arrival order.
        async with self._lock:
            while True:
                wait_s = self.retry_after_s()
                if wait_s <= 0:
                    self._stamps.append(self._clock())
                    return
                logger.debug("rate_limit_wait guard=%s wait_s=%.2f", self._name, wait_s)
                await self._sleep(wait_s)


class RedisSlidingWindowGuard:
    """Sliding window shared by every worker process through one Redis key.

    The trim, count and insert run in a single Lua script so concurrent
    workers never both take the last slot. When Redis is unreachable the
    guard fails open (logs and lets the job through) unless `fail_open` is
    False, in which case the error fails the attempt.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        redis: Redis,
        *,
        key: str,
        fail_open: bool = True,
        time_provider: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("rate limit must be at least 1 per window")
        self._name = name
        self._limit = limit
        self._redis = redis
        self._key = key
        self._fail_open = fail_open
        # Wall clock: every process stamps the shared window on the same scale.
        self._time_provider = time_provider or time.time
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def key(self) -> str:
        return self._key

    async def try_acquire(self) -> float:
        """Take a slot if one is free; returns 0, or the seconds to wait before trying again."""
        now_ms = int(self._time_provider() * 1000)
        wait_ms = await self._redis.eval(
            _SLIDING_WINDOW_LUA,
            1,
            self._key,
            now_ms,
            int(WINDOW_S * 1000),
            self._limit,
            f"{now_ms}:{uuid.uuid4().hex}",
        )
        return int(wait_ms) / 1000.0

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                try:
                    wait_s = await self.try_acquire()
                except Exception:  # noqa: BLE001 - guard against Redis connectivity failures
                    if not self._fail_open:
                        raise
                    logger.warning("rate_limit_degraded guard=%s", self._name)
                    return
                if wait_s <= 0:
                    return
                logger.debug("rate_limit_wait guard=%s wait_s=%.2f", self._name, wait_s)
                await self._sleep(wait_s)


class RateLimiter:
    """Per-provider guards shared by every worker pool.

    With a Redis connection the windows live in Redis and are shared by all
    worker processes; without one each process keeps its own window.
    """

    def __init__(
        self,
        limits_per_minute: Mapping[str, int],
        *,
        redis: Redis | None = None,
        prefix: str = "tenantbot:rl",
        fail_open: bool = True,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._shared = redis is not None
        self._guards: dict[str, SlidingWindowGuard | RedisSlidingWindowGuard] = {}
        for provider, limit in limits_per_minute.items():
            if redis is not None:
                self._guards[provider] = RedisSlidingWindowGuard(
                    provider,
                    limit,
                    redis,
                    key=f"{prefix.rstrip(':')}:{provider}",
                    fail_open=fail_open,
                    time_provider=clock,
                )
            else:
                self._guards[provider] = SlidingWindowGuard(provider, limit, clock=clock)

    @property
    def shared(self) -> bool:
        return self._shared

    def guard_for(self, record: JobRecord) -> RateGuard | None:
        provider = self.provider_for(record)
        return self._guards.get(provider) if provider else None

    @staticmethod
    def provider_for(record: JobRecord) -> str | None:
        if isinstance(record.payload, ExternalSyncPayload):
            return record.payload.provider.value
        return _JOB_PROVIDERS.get(record.job_type)

    def limits(self) -> dict[str, int]:
        return {provider: guard.limit for provider, guard in self._guards.items()}
