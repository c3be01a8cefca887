from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final, Protocol

from tenantbot.core.config import Settings
from tenantbot.core.errors import EncryptionKeyError
from tenantbot.services.crypto.cipher import KEY_BYTES, TokenCipher
from tenantbot.services.crypto.utils import decode_key_material


logger = logging.getLogger(__name__)


class SecretProvider(Protocol):
    provider: str

    def get_secret(self, name: str) -> str | None:
        ...


class FileSecretProvider:
    """Reads secrets mounted as one file per secret (docker/k8s secrets)."""

    provider: Final[str] = "file"

    def __init__(self, settings: Settings) -> None:
        self._root = Path(settings.secrets_dir)

    def get_secret(self, name: str) -> str | None:
        path = self._root / name
        if not path.is_file():
            return None
        value = path.read_text(encoding="utf-8").strip()
        return value or None


class EnvSecretProvider:
    provider: Final[str] = "env"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def get_secret(self, name: str) -> str | None:
        value = os.getenv(name)
        return value.strip() if value and value.strip() else None


_SECRET_PROVIDERS: dict[str, type[SecretProvider]] = {
    "file": FileSecretProvider,
    "env": EnvSecretProvider,
}


def get_secret_provider(settings: Settings) -> SecretProvider:
    provider_cls = _SECRET_PROVIDERS.get(settings.secrets_provider)
    if provider_cls is None:
        raise EncryptionKeyError(f"Unsupported secrets provider: {settings.secrets_provider}")
    return provider_cls(settings)


def load_encryption_key(settings: Settings, *, provider: SecretProvider | None = None) -> bytes:
    """Load the 32-byte credential encryption key.

    The configured secret store is consulted first. The plain
    CREDENTIAL_ENCRYPTION_KEY setting is a fallback for local runs and is
    logged as a warning when used. There is no built-in default key.
    """
    source = provider or get_secret_provider(settings)
    raw = source.get_secret(settings.credential_encryption_key_name)
    origin = f"{source.provider}:{settings.credential_encryption_key_name}"
    if raw is None and settings.credential_encryption_key:
        logger.warning(
            "encryption_key_env_fallback provider=%s name=%s",
            source.provider,
            settings.credential_encryption_key_name,
        )
        raw = settings.credential_encryption_key
        origin = "env:CREDENTIAL_ENCRYPTION_KEY"
    if raw is None:
        raise EncryptionKeyError(
            f"credential encryption key {settings.credential_encryption_key_name} not found "
            f"in {source.provider} secret store and CREDENTIAL_ENCRYPTION_KEY is unset"
        )
    try:
        key = decode_key_material(raw)
    except ValueError as exc:
        raise EncryptionKeyError(f"encryption key from {origin} is not base64 or hex") from exc
    if len(key) != KEY_BYTES:
        raise EncryptionKeyError(f"encryption key from {origin} must decode to {KEY_BYTES} bytes")
    logger.info("encryption_key_loaded source=%s", origin)
    return key


def build_token_cipher(settings: Settings, *, provider: SecretProvider | None = None) -> TokenCipher:
    return TokenCipher(load_encryption_key(settings, provider=provider))
