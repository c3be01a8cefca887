from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from tenantbot.core.config import Settings, get_settings
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TransportError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


def exponential_backoff_ms(base_ms: int, attempt: int) -> int:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base..."""
    return int(base_ms * (2 ** (max(attempt, 1) - 1)))


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    metrics: MetricsRegistry | None = None,
    operation: str = "external",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            if metrics is not None:
                metrics.increment_counter("external_retries_total", labels={"operation": operation})
            logger.info("retrying_operation operation=%s attempt=%s error=%s", operation, attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (exponential_backoff_ms(policy.backoff_ms, attempt) / 1000.0) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
