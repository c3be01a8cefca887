from tenantbot.services.jobs.orchestrator import JobHandler, JobOrchestrator, next_fire_time, occurrence_id
from tenantbot.services.jobs.pool import WorkerPool
from tenantbot.services.jobs.rate_limit import RateLimiter, RedisSlidingWindowGuard, SlidingWindowGuard
from tenantbot.services.jobs.store import STAT_KEYS, JobStore, MemoryJobStore

__all__ = [
    "JobHandler",
    "JobOrchestrator",
    "next_fire_time",
    "occurrence_id",
    "WorkerPool",
    "RateLimiter",
    "RedisSlidingWindowGuard",
    "SlidingWindowGuard",
    "STAT_KEYS",
    "JobStore",
    "MemoryJobStore",
]
