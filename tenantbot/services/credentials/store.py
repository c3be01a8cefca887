from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from tenantbot.core.config import TOKEN_EXPIRY_BUFFER_S
from tenantbot.core.errors import CredentialEncryptionError, DatabaseError, RefreshError
from tenantbot.domain.models import ProviderCredential
from tenantbot.persistence.db import SessionFactory
from tenantbot.persistence.repos import credentials as credentials_repo
from tenantbot.services.credentials.refresh import TokenRefresher
from tenantbot.services.crypto.cipher import TokenCipher
from tenantbot.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every comparison here is in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Credential:
    tenant_id: str
    provider: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    scope: str
    token_type: str
    last_refresh_at: datetime | None


@dataclass(frozen=True)
class ProviderSummary:
    # Connected-provider view without token material.
    provider: str
    expires_at: datetime | None
    expired: bool
    scope: str
    last_refresh_at: datetime | None


def is_expired(expires_at: datetime | None, *, now: datetime | None = None) -> bool:
    """True when the token expires within the safety buffer; None never expires."""
    if expires_at is None:
        return False
    current = now or _utc_now()
    return _as_utc(expires_at) <= current + timedelta(seconds=TOKEN_EXPIRY_BUFFER_S)


class CredentialStore:
    """Encrypted per-tenant, per-provider OAuth credentials.

    Rows are written with single-statement upserts, tokens are encrypted
    independently before they reach the session, and invalidated rows are
    treated as absent by every reader.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        cipher: TokenCipher,
        *,
        refresher: TokenRefresher | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._refresher = refresher
        self._metrics = metrics
        self._clock = clock or _utc_now
        # Single-flight refreshes per (tenant, provider) within this process; a lock
        # lives only while some caller holds or awaits it.
        self._refresh_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._refresh_users: dict[tuple[str, str], int] = {}

    @staticmethod
    def is_expired(expires_at: datetime | None, *, now: datetime | None = None) -> bool:
        return is_expired(expires_at, now=now)

    async def store(
        self,
        tenant_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        scope: str | None = None,
    ) -> None:
        # Encrypt before opening the session so a cipher failure never leaves a partial write.
        access_ciphertext = self._cipher.encrypt(access_token)
        refresh_ciphertext = self._cipher.encrypt(refresh_token) if refresh_token else None
        try:
            async with self._session_factory() as session:
                await credentials_repo.upsert_credential(
                    session,
                    tenant_id=tenant_id,
                    provider=provider,
                    access_token_ciphertext=access_ciphertext,
                    refresh_token_ciphertext=refresh_ciphertext,
                    expires_at=_as_utc(expires_at),
                    scope=scope or "",
                    now=self._clock(),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to store credential for tenant {tenant_id}") from exc
        logger.info("credential_stored tenant_id=%s provider=%s", tenant_id, provider)

    async def get(self, tenant_id: str, provider: str) -> Credential | None:
        async with self._session_factory() as session:
            row = await credentials_repo.get_credential(session, tenant_id, provider)
        if row is None or not row.is_valid:
            return None
        return self._decrypt_row(row)

    async def refresh(self, tenant_id: str, provider: str) -> str:
        """Exchange the stored refresh token for a new access token.

        Any failure (no refresh token, provider rejection, transport error,
        undecryptable row) invalidates the credential and raises RefreshError.
        """
        key = (tenant_id, provider)
        lock = self._refresh_locks.setdefault(key, asyncio.Lock())
        contended = lock.locked()
        self._refresh_users[key] = self._refresh_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._refresh_serialized(tenant_id, provider, contended)
        finally:
            remaining = self._refresh_users[key] - 1
            if remaining:
                self._refresh_users[key] = remaining
            else:
                del self._refresh_users[key]
                del self._refresh_locks[key]

    @property
    def refresh_locks_in_use(self) -> int:
        return len(self._refresh_locks)

    async def _refresh_serialized(self, tenant_id: str, provider: str, contended: bool) -> str:
        current = await self.get(tenant_id, provider)
        # Another caller refreshed while we waited for the lock.
        if contended and current is not None and not is_expired(current.expires_at, now=self._clock()):
            return current.access_token
        try:
            return await self._refresh_locked(tenant_id, provider, current)
        except RefreshError:
            await self.invalidate(tenant_id, provider)
            raise
        except Exception as exc:  # noqa: BLE001 - every refresh failure invalidates the credential
            await self.invalidate(tenant_id, provider)
            if self._metrics is not None:
                self._metrics.increment_counter("token_refresh_failures_total", labels={"provider": provider})
            logger.warning(
                "token_refresh_failed tenant_id=%s provider=%s error=%s",
                tenant_id,
                provider,
                type(exc).__name__,
            )
            raise RefreshError(
                f"token refresh failed for {provider}: {exc}",
                tenant_id=tenant_id,
                provider=provider,
            ) from exc

    async def _refresh_locked(self, tenant_id: str, provider: str, current: Credential | None) -> str:
        if current is None:
            raise RefreshError(
                f"no valid {provider} credential to refresh",
                tenant_id=tenant_id,
                provider=provider,
            )
        if not current.refresh_token:
            raise RefreshError(
                f"{provider} credential has no refresh token",
                tenant_id=tenant_id,
                provider=provider,
            )
        if self._refresher is None:
            raise RefreshError("no token refresher configured", tenant_id=tenant_id, provider=provider)
        refreshed = await self._refresher.refresh(provider, current.refresh_token)
        await self.store(
            tenant_id,
            provider,
            refreshed.access_token,
            # Keep the existing refresh token when the provider does not rotate it.
            refresh_token=refreshed.refresh_token or current.refresh_token,
            expires_at=refreshed.expires_at,
            scope=refreshed.scope or current.scope,
        )
        if self._metrics is not None:
            self._metrics.increment_counter("token_refresh_total", labels={"provider": provider})
        return refreshed.access_token

    async def get_valid_access_token(self, tenant_id: str, provider: str) -> str | None:
        """Access token for the tenant, refreshed first when it is inside the expiry buffer."""
        credential = await self.get(tenant_id, provider)
        if credential is None:
            return None
        if not is_expired(credential.expires_at, now=self._clock()):
            return credential.access_token
        return await self.refresh(tenant_id, provider)

    async def invalidate(self, tenant_id: str, provider: str) -> None:
        async with self._session_factory() as session:
            updated = await credentials_repo.set_validity(
                session, tenant_id, provider, is_valid=False, now=self._clock()
            )
            await session.commit()
        if updated:
            logger.warning("credential_invalidated tenant_id=%s provider=%s", tenant_id, provider)

    async def remove(self, tenant_id: str, provider: str) -> None:
        async with self._session_factory() as session:
            deleted = await credentials_repo.delete_credential(session, tenant_id, provider)
            await session.commit()
        logger.info("credential_removed tenant_id=%s provider=%s deleted=%s", tenant_id, provider, deleted)

    async def list_providers(self, tenant_id: str) -> list[ProviderSummary]:
        async with self._session_factory() as session:
            rows = await credentials_repo.list_credentials(session, tenant_id, valid_only=True)
        now = self._clock()
        return [
            ProviderSummary(
                provider=row.provider,
                expires_at=_as_utc(row.expires_at),
                expired=is_expired(row.expires_at, now=now),
                scope=row.scope,
                last_refresh_at=_as_utc(row.last_refresh_at),
            )
            for row in rows
        ]

    async def purge_invalid(self, older_than: datetime) -> int:
        # Cleanup target "expired_tokens": drop credentials invalidated before the cutoff.
        async with self._session_factory() as session:
            deleted = await credentials_repo.delete_invalid_before(session, _as_utc(older_than))
            await session.commit()
        logger.info("invalid_credentials_purged deleted=%s cutoff=%s", deleted, older_than.isoformat())
        return deleted

    async def count_summary(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await credentials_repo.count_by_state(session, now=self._clock())

    async def rotate_key(self, new_cipher: TokenCipher) -> int:
        """Re-encrypt every stored token under `new_cipher`; returns rows rewritten."""
        rotated = 0
        async with self._session_factory() as session:
            rows = await credentials_repo.list_all_credentials(session)
            for row in rows:
                await credentials_repo.replace_ciphertexts(
                    session,
                    row.id,
                    access_token_ciphertext=self._cipher.rotate(row.access_token_ciphertext, new_cipher),
                    refresh_token_ciphertext=(
                        self._cipher.rotate(row.refresh_token_ciphertext, new_cipher)
                        if row.refresh_token_ciphertext
                        else None
                    ),
                    now=self._clock(),
                )
                rotated += 1
            # All rows move to the new key in one transaction or none do.
            await session.commit()
        self._cipher = new_cipher
        logger.info("credential_key_rotated rows=%s", rotated)
        return rotated

    def _decrypt_row(self, row: ProviderCredential) -> Credential:
        try:
            access_token = self._cipher.decrypt(row.access_token_ciphertext)
            refresh_token = (
                self._cipher.decrypt(row.refresh_token_ciphertext) if row.refresh_token_ciphertext else None
            )
        except CredentialEncryptionError:
            logger.error("credential_decrypt_failed tenant_id=%s provider=%s", row.tenant_id, row.provider)
            raise
        return Credential(
            tenant_id=row.tenant_id,
            provider=row.provider,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_as_utc(row.expires_at),
            scope=row.scope,
            token_type=row.token_type,
            last_refresh_at=_as_utc(row.last_refresh_at),
        )
