from __future__ import annotations

import logging
from typing import Any

import httpx

from tenantbot.core.errors import InvalidCredentialError, ProviderRequestError


logger = logging.getLogger(__name__)

# Platform error codes meaning the token is no longer accepted.
AUTH_REJECTION_ERRORS = frozenset(
    {"invalid_auth", "token_revoked", "account_inactive", "not_authed", "token_expired"}
)


class PlatformClient:
    """Chat platform Web API client bound to one tenant's bot token.

    Instances are cheap: they share the process-wide httpx client and only
    carry the token and tenant identity.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        *,
        base_url: str,
        tenant_id: str,
        parent_org_id: str | None = None,
        source: str = "installation",
    ) -> None:
        self._http = http_client
        self._token = token
        self._base_url = base_url.rstrip("/")
        self.tenant_id = tenant_id
        self.parent_org_id = parent_org_id
        # Which credential source produced the token ("installation" or "static").
        self.source = source

    def __repr__(self) -> str:
        return f"PlatformClient(tenant_id={self.tenant_id!r}, parent_org_id={self.parent_org_id!r}, source={self.source!r})"

    async def call(self, method: str, **params: Any) -> dict[str, Any]:
        try:
            response = await self._http.post(
                f"{self._base_url}/{method}",
                json={key: value for key, value in params.items() if value is not None},
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TransportError as exc:
            raise ProviderRequestError(f"{method} transport failure: {exc}") from exc
        if response.status_code == 401:
            raise InvalidCredentialError(f"{method} unauthorized", status_code=401, error_code="not_authed")
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{method} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderRequestError(f"{method} returned a non-JSON body", status_code=response.status_code) from exc
        if not body.get("ok", False):
            error_code = str(body.get("error") or "unknown_error")
            if error_code in AUTH_REJECTION_ERRORS:
                raise InvalidCredentialError(
                    f"{method} rejected credential: {error_code}",
                    status_code=response.status_code,
                    error_code=error_code,
                )
            raise ProviderRequestError(
                f"{method} failed: {error_code}",
                status_code=response.status_code,
                error_code=error_code,
            )
        return body

    async def auth_test(self) -> dict[str, Any]:
        # No-op probe used by the credential audit.
        return await self.call("auth.test")

    async def post_message(self, channel: str, text: str, **extra: Any) -> dict[str, Any]:
        return await self.call("chat.postMessage", channel=channel, text=text, **extra)
