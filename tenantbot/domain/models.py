from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CredentialProvider(str, Enum):
    PLATFORM_BOT = "platform-bot"
    CALENDAR = "calendar"
    DOCUMENTS = "documents"
    MAIL = "mail"


TOKEN_TYPE_BEARER = "Bearer"


def installation_key(tenant_id: str, parent_org_id: str | None) -> str:
    # Shared key format for the client cache and installation-scoped bot credentials.
    return f"{tenant_id}:{parent_org_id or 'null'}"


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_provider_credentials_tenant_provider"),
        Index("ix_provider_credentials_valid_expires", "is_valid", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    # Packed base64(iv || auth_tag || ciphertext); plaintext never reaches the database.
    access_token_ciphertext: Mapped[str] = mapped_column(Text)
    refresh_token_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Null expiry means the provider issued a non-expiring token.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str] = mapped_column(String, default="", nullable=False)
    token_type: Mapped[str] = mapped_column(String, default=TOKEN_TYPE_BEARER, nullable=False)
    # Invalidated rows are kept for audit tooling; readers treat them as absent.
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_refresh_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Installation(Base):
    __tablename__ = "installations"
    __table_args__ = (
        UniqueConstraint("install_key", name="uq_installations_install_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Non-null "tenant:parent|null" key; a unique index on nullable parent_org_id would admit duplicates.
    install_key: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Set for hierarchical tenants (enterprise grids); null for standalone workspaces.
    parent_org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    bot_id: Mapped[str | None] = mapped_column(String, nullable=True)
    bot_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scope: Mapped[str] = mapped_column(String, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
