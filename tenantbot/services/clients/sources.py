from __future__ import annotations

import logging
from typing import Protocol

from tenantbot.core.errors import NoValidCredentialError, RefreshError
from tenantbot.domain.models import CredentialProvider, installation_key
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.installations import InstallationStore


logger = logging.getLogger(__name__)


class CredentialSource(Protocol):
    """One strategy in the ordered bot-token lookup chain.

    `lookup` returns a token when this source applies, None to defer to the
    next source, or raises NoValidCredentialError to stop the chain.
    """

    name: str

    async def lookup(self, tenant_id: str, parent_org_id: str | None) -> str | None:
        ...


class InstallationCredentialSource:
    name = "installation"

    def __init__(self, installations: InstallationStore, credentials: CredentialStore) -> None:
        self._installations = installations
        self._credentials = credentials

    async def lookup(self, tenant_id: str, parent_org_id: str | None) -> str | None:
        installation = await self._installations.fetch(tenant_id, parent_org_id)
        if installation is None:
            return None
        # An installed tenant with a dead token must re-authorize, never fall through to a shared token.
        try:
            token = await self._credentials.get_valid_access_token(
                installation_key(tenant_id, parent_org_id),
                CredentialProvider.PLATFORM_BOT.value,
            )
        except RefreshError as exc:
            raise NoValidCredentialError(tenant_id, parent_org_id) from exc
        if token is None:
            raise NoValidCredentialError(tenant_id, parent_org_id)
        return token


class StaticTokenSource:
    name = "static"

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def lookup(self, tenant_id: str, parent_org_id: str | None) -> str | None:
        if not self._token:
            return None
        logger.warning(
            "static_token_fallback tenant_id=%s parent_org_id=%s reason=no_installation",
            tenant_id,
            parent_org_id,
        )
        return self._token
