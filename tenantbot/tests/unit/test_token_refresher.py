from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from tenantbot.core.config import Settings
from tenantbot.core.errors import InvalidCredentialError, ProviderRequestError
from tenantbot.services.credentials.refresh import OAuthClientConfig, OAuthTokenRefresher, oauth_client_configs
from tenantbot.services.resilience import RetryPolicy


CONFIGS = {"calendar": OAuthClientConfig(token_url="https://oauth.test/token", client_id="cid", client_secret="csecret")}


def _refresher(handler) -> OAuthTokenRefresher:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OAuthTokenRefresher(
        Settings(),
        http,
        policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1),
        configs=CONFIGS,
    )


@pytest.mark.asyncio
async def test_refresh_posts_refresh_grant() -> None:
    forms: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        forms.append(parse_qs(request.content.decode("utf-8")))
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600, "scope": "events"})

    token = await _refresher(handler).refresh("calendar", "r-1")
    assert token.access_token == "new-access"
    assert token.refresh_token is None
    assert token.expires_at is not None
    assert token.scope == "events"
    assert forms[0]["grant_type"] == ["refresh_token"]
    assert forms[0]["refresh_token"] == ["r-1"]
    assert forms[0]["client_id"] == ["cid"]


@pytest.mark.asyncio
async def test_revoked_refresh_token_is_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(InvalidCredentialError) as exc_info:
        await _refresher(handler).refresh("calendar", "r-dead")
    assert exc_info.value.error_code == "invalid_grant"
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_ok_false_body_is_a_rejection() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "token_revoked"})

    with pytest.raises(InvalidCredentialError):
        await _refresher(handler).refresh("calendar", "r-1")


@pytest.mark.asyncio
async def test_server_error_is_retried_once() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"access_token": "after-retry", "refresh_token": "r-2"})

    token = await _refresher(handler).refresh("calendar", "r-1")
    assert token.access_token == "after-retry"
    assert token.refresh_token == "r-2"
    assert token.expires_at is None
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_persistent_server_error_surfaces() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(ProviderRequestError) as exc_info:
        await _refresher(handler).refresh("calendar", "r-1")
    assert not isinstance(exc_info.value, InvalidCredentialError)


@pytest.mark.asyncio
async def test_unconfigured_provider_fails() -> None:
    with pytest.raises(ProviderRequestError):
        await _refresher(lambda request: httpx.Response(200)).refresh("mail", "r-1")


def test_client_configs_require_credentials() -> None:
    configs = oauth_client_configs(Settings(calendar_client_id="cid", calendar_client_secret="s", mail_client_id="only-id"))
    assert set(configs) == {"calendar"}
