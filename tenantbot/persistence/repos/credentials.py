from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tenantbot.domain.models import TOKEN_TYPE_BEARER, ProviderCredential


def dialect_insert(session: AsyncSession):
    # ON CONFLICT upserts are dialect-specific; Postgres in production, SQLite in tests.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"credential upsert not supported for dialect {dialect}")


async def upsert_credential(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    access_token_ciphertext: str,
    refresh_token_ciphertext: str | None,
    expires_at: datetime | None,
    scope: str,
    now: datetime,
) -> None:
    # Single-statement upsert so concurrent writers never leave a half-updated row.
    insert = dialect_insert(session)
    values = {
        "access_token_ciphertext": access_token_ciphertext,
        "refresh_token_ciphertext": refresh_token_ciphertext,
        "expires_at": expires_at,
        "scope": scope,
        "is_valid": True,
        "last_refresh_at": now,
        "updated_at": now,
    }
    stmt = insert(ProviderCredential).values(
        tenant_id=tenant_id,
        provider=provider,
        token_type=TOKEN_TYPE_BEARER,
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ProviderCredential.tenant_id, ProviderCredential.provider],
        set_=values,
    )
    await session.execute(stmt)


async def get_credential(session: AsyncSession, tenant_id: str, provider: str) -> ProviderCredential | None:
    result = await session.execute(
        select(ProviderCredential).where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
    )
    return result.scalar_one_or_none()


async def set_validity(
    session: AsyncSession,
    tenant_id: str,
    provider: str,
    *,
    is_valid: bool,
    now: datetime,
) -> int:
    result = await session.execute(
        update(ProviderCredential)
        .where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
        .values(is_valid=is_valid, updated_at=now)
    )
    return int(result.rowcount or 0)


async def delete_credential(session: AsyncSession, tenant_id: str, provider: str) -> int:
    result = await session.execute(
        delete(ProviderCredential).where(
            ProviderCredential.tenant_id == tenant_id,
            ProviderCredential.provider == provider,
        )
    )
    return int(result.rowcount or 0)


async def list_credentials(
    session: AsyncSession,
    tenant_id: str,
    *,
    valid_only: bool = True,
) -> list[ProviderCredential]:
    stmt = select(ProviderCredential).where(ProviderCredential.tenant_id == tenant_id)
    if valid_only:
        stmt = stmt.where(ProviderCredential.is_valid.is_(True))
    result = await session.execute(stmt.order_by(ProviderCredential.provider))
    return list(result.scalars().all())


async def list_all_credentials(session: AsyncSession) -> list[ProviderCredential]:
    result = await session.execute(select(ProviderCredential).order_by(ProviderCredential.id))
    return list(result.scalars().all())


async def replace_ciphertexts(
    session: AsyncSession,
    credential_id: int,
    *,
    access_token_ciphertext: str,
    refresh_token_ciphertext: str | None,
    now: datetime,
) -> None:
    # Used by key rotation; token material is unchanged, only its encryption.
    await session.execute(
        update(ProviderCredential)
        .where(ProviderCredential.id == credential_id)
        .values(
            access_token_ciphertext=access_token_ciphertext,
            refresh_token_ciphertext=refresh_token_ciphertext,
            updated_at=now,
        )
    )


async def delete_invalid_before(session: AsyncSession, cutoff: datetime) -> int:
    result = await session.execute(
        delete(ProviderCredential).where(
            ProviderCredential.is_valid.is_(False),
            ProviderCredential.updated_at < cutoff,
        )
    )
    return int(result.rowcount or 0)


async def count_by_state(session: AsyncSession, *, now: datetime) -> dict[str, int]:
    # Summarize credential health for the system health check.
    valid = await session.scalar(
        select(func.count()).select_from(ProviderCredential).where(ProviderCredential.is_valid.is_(True))
    )
    expired = await session.scalar(
        select(func.count())
        .select_from(ProviderCredential)
        .where(
            ProviderCredential.is_valid.is_(True),
            ProviderCredential.expires_at.is_not(None),
            ProviderCredential.expires_at < now,
        )
    )
    invalid = await session.scalar(
        select(func.count()).select_from(ProviderCredential).where(ProviderCredential.is_valid.is_(False))
    )
    return {"valid": int(valid or 0), "expired": int(expired or 0), "invalid": int(invalid or 0)}
