from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from tenantbot.core.config import Settings
from tenantbot.core.errors import InvalidCredentialError, ProviderRequestError
from tenantbot.domain.models import CredentialProvider
from tenantbot.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

# Error codes that mean the refresh token itself is dead; never retried.
_REJECTED_GRANT_ERRORS = frozenset({"invalid_grant", "invalid_refresh_token", "token_revoked", "unauthorized_client"})


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    # Providers that do not rotate refresh tokens return None here.
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None


@dataclass(frozen=True)
class OAuthClientConfig:
    token_url: str
    client_id: str
    client_secret: str


class TokenRefresher(Protocol):
    async def refresh(self, provider: str, refresh_token: str) -> RefreshedToken:
        ...


def oauth_client_configs(settings: Settings) -> dict[str, OAuthClientConfig]:
    # Only providers with client credentials configured can be refreshed.
    candidates = {
        CredentialProvider.PLATFORM_BOT.value: (
            settings.platform_token_url,
            settings.platform_client_id,
            settings.platform_client_secret,
        ),
        CredentialProvider.CALENDAR.value: (
            settings.calendar_token_url,
            settings.calendar_client_id,
            settings.calendar_client_secret,
        ),
        CredentialProvider.DOCUMENTS.value: (
            settings.documents_token_url,
            settings.documents_client_id,
            settings.documents_client_secret,
        ),
        CredentialProvider.MAIL.value: (
            settings.mail_token_url,
            settings.mail_client_id,
            settings.mail_client_secret,
        ),
    }
    return {
        provider: OAuthClientConfig(token_url=url, client_id=client_id, client_secret=secret)
        for provider, (url, client_id, secret) in candidates.items()
        if url and client_id and secret
    }


def _expires_at(body: dict[str, Any], now: datetime) -> datetime | None:
    expires_in = body.get("expires_in")
    if expires_in is None:
        return None
    return now + timedelta(seconds=int(expires_in))


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, InvalidCredentialError):
        return False
    if isinstance(exc, httpx.TransportError):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


class OAuthTokenRefresher:
    """Exchanges refresh tokens at each provider's OAuth token endpoint."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        metrics: MetricsRegistry | None = None,
        policy: RetryPolicy | None = None,
        configs: dict[str, OAuthClientConfig] | None = None,
    ) -> None:
        self._http = http_client
        self._metrics = metrics
        self._configs = configs if configs is not None else oauth_client_configs(settings)
        # One retry of transient failures; rejected grants are never retried.
        base = policy or default_retry_policy(settings)
        self._policy = RetryPolicy(timeout_ms=base.timeout_ms, max_attempts=2, backoff_ms=base.backoff_ms)

    async def refresh(self, provider: str, refresh_token: str) -> RefreshedToken:
        config = self._configs.get(provider)
        if config is None:
            raise ProviderRequestError(f"No OAuth client configured for provider {provider}")

        async def _call() -> RefreshedToken:
            return await self._exchange(provider, config, refresh_token)

        return await retry_async(
            _call,
            policy=self._policy,
            retryable=_is_retryable,
            metrics=self._metrics,
            operation=f"token_refresh.{provider}",
        )

    async def _exchange(self, provider: str, config: OAuthClientConfig, refresh_token: str) -> RefreshedToken:
        start = time.monotonic()
        response = await self._http.post(
            config.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
            headers={"Accept": "application/json"},
        )
        if self._metrics is not None:
            self._metrics.observe(
                "token_refresh_duration_seconds",
                time.monotonic() - start,
                labels={"provider": provider},
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        # Chat platforms answer 200 with ok=false; classic OAuth servers use 4xx.
        error_code = body.get("error")
        if response.status_code >= 500:
            raise ProviderRequestError(
                f"{provider} token endpoint returned {response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
            )
        if response.status_code >= 400 or body.get("ok") is False or error_code:
            if error_code in _REJECTED_GRANT_ERRORS or response.status_code in (400, 401):
                raise InvalidCredentialError(
                    f"{provider} rejected refresh token: {error_code or response.status_code}",
                    status_code=response.status_code,
                    error_code=error_code,
                )
            raise ProviderRequestError(
                f"{provider} token refresh failed: {error_code or response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
            )
        access_token = body.get("access_token")
        if not access_token:
            raise ProviderRequestError(f"{provider} token response missing access_token")
        logger.info("token_refreshed provider=%s", provider)
        return RefreshedToken(
            access_token=str(access_token),
            refresh_token=body.get("refresh_token") or None,
            expires_at=_expires_at(body, datetime.now(timezone.utc)),
            scope=body.get("scope"),
        )
