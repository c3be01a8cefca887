from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import httpx

from tenantbot.core.errors import InvalidCredentialError
from tenantbot.services.credentials.refresh import RefreshedToken


class FakeClock:
    """Settable UTC clock shared by stores and orchestrators under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRefresher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.result: RefreshedToken | None = None
        self.error: Exception | None = None
        # Optional gate so tests can hold a refresh open while others queue up.
        self.gate: asyncio.Event | None = None

    async def refresh(self, provider: str, refresh_token: str) -> RefreshedToken:
        self.calls.append((provider, refresh_token))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise InvalidCredentialError("no refresh configured", error_code="invalid_grant")
        return self.result


class FakeProbeClient:
    def __init__(self, tenant_id: str, error: Exception | None = None) -> None:
        self.tenant_id = tenant_id
        self.error = error
        self.calls = 0

    async def auth_test(self) -> dict[str, Any]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {"ok": True}


def platform_transport(
    responder: Callable[[httpx.Request], dict[str, Any] | httpx.Response],
) -> httpx.MockTransport:
    """MockTransport that records requests and wraps dict replies as 200 JSON."""

    def handler(request: httpx.Request) -> httpx.Response:
        reply = responder(request)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    return httpx.MockTransport(handler)


async def wait_until(
    predicate: Callable[[], Awaitable[bool]],
    *,
    timeout_s: float = 3.0,
    interval_s: float = 0.01,
) -> None:
    # Poll async state until it holds; worker pools run on their own tasks.
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if await predicate():
            return
        await asyncio.sleep(interval_s)
    raise AssertionError("condition not met before timeout")
