from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from tenantbot.domain.models import CredentialProvider, Installation, installation_key
from tenantbot.persistence.db import SessionFactory
from tenantbot.persistence.repos import installations as installations_repo
from tenantbot.services.credentials.store import CredentialStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallationRecord:
    tenant_id: str
    parent_org_id: str | None
    bot_id: str | None
    bot_user_id: str | None
    scope: str

    @property
    def key(self) -> str:
        return installation_key(self.tenant_id, self.parent_org_id)


def _to_record(row: Installation) -> InstallationRecord:
    return InstallationRecord(
        tenant_id=row.tenant_id,
        parent_org_id=row.parent_org_id,
        bot_id=row.bot_id,
        bot_user_id=row.bot_user_id,
        scope=row.scope,
    )


class InstallationStore:
    """Workspace installations; the bot token itself lives in CredentialStore."""

    def __init__(
        self,
        session_factory: SessionFactory,
        credentials: CredentialStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._credentials = credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def save(
        self,
        tenant_id: str,
        parent_org_id: str | None,
        bot_token: str,
        *,
        bot_id: str | None = None,
        bot_user_id: str | None = None,
        scope: str | None = None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> InstallationRecord:
        # Token first: an installation row without a usable credential would resolve to nothing.
        await self._credentials.store(
            installation_key(tenant_id, parent_org_id),
            CredentialProvider.PLATFORM_BOT.value,
            bot_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=scope,
        )
        async with self._session_factory() as session:
            await installations_repo.upsert_installation(
                session,
                tenant_id=tenant_id,
                parent_org_id=parent_org_id,
                bot_id=bot_id,
                bot_user_id=bot_user_id,
                scope=scope or "",
                now=self._clock(),
            )
            await session.commit()
        logger.info("installation_saved tenant_id=%s parent_org_id=%s", tenant_id, parent_org_id)
        return InstallationRecord(
            tenant_id=tenant_id,
            parent_org_id=parent_org_id,
            bot_id=bot_id,
            bot_user_id=bot_user_id,
            scope=scope or "",
        )

    async def fetch(self, tenant_id: str, parent_org_id: str | None = None) -> InstallationRecord | None:
        async with self._session_factory() as session:
            row = await installations_repo.get_installation(session, tenant_id, parent_org_id)
        return _to_record(row) if row is not None else None

    async def delete(self, tenant_id: str, parent_org_id: str | None = None) -> None:
        async with self._session_factory() as session:
            deleted = await installations_repo.delete_installation(session, tenant_id, parent_org_id)
            await session.commit()
        await self._credentials.remove(
            installation_key(tenant_id, parent_org_id),
            CredentialProvider.PLATFORM_BOT.value,
        )
        logger.info(
            "installation_deleted tenant_id=%s parent_org_id=%s deleted=%s",
            tenant_id,
            parent_org_id,
            deleted,
        )

    async def list_installations(self, tenant_id: str | None = None) -> list[InstallationRecord]:
        async with self._session_factory() as session:
            rows = await installations_repo.list_installations(session, tenant_id)
        return [_to_record(row) for row in rows]
