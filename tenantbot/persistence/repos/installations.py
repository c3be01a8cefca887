from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbot.domain.models import Installation, installation_key
from tenantbot.persistence.repos.credentials import dialect_insert


async def upsert_installation(
    session: AsyncSession,
    *,
    tenant_id: str,
    parent_org_id: str | None,
    bot_id: str | None,
    bot_user_id: str | None,
    scope: str,
    now: datetime,
) -> None:
    insert = dialect_insert(session)
    values = {
        "bot_id": bot_id,
        "bot_user_id": bot_user_id,
        "scope": scope,
        "updated_at": now,
    }
    stmt = insert(Installation).values(
        install_key=installation_key(tenant_id, parent_org_id),
        tenant_id=tenant_id,
        parent_org_id=parent_org_id,
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(index_elements=[Installation.install_key], set_=values)
    await session.execute(stmt)


async def get_installation(
    session: AsyncSession,
    tenant_id: str,
    parent_org_id: str | None,
) -> Installation | None:
    result = await session.execute(
        select(Installation).where(Installation.install_key == installation_key(tenant_id, parent_org_id))
    )
    return result.scalar_one_or_none()


async def delete_installation(session: AsyncSession, tenant_id: str, parent_org_id: str | None) -> int:
    result = await session.execute(
        delete(Installation).where(Installation.install_key == installation_key(tenant_id, parent_org_id))
    )
    return int(result.rowcount or 0)


async def list_installations(session: AsyncSession, tenant_id: str | None = None) -> list[Installation]:
    stmt = select(Installation)
    if tenant_id is not None:
        stmt = stmt.where(Installation.tenant_id == tenant_id)
    result = await session.execute(stmt.order_by(Installation.tenant_id, Installation.id))
    return list(result.scalars().all())
