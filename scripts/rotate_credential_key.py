from __future__ import annotations

import argparse
import asyncio
import os
import sys

from tenantbot.core.config import get_settings
from tenantbot.core.logging import configure_logging
from tenantbot.persistence.db import create_engine, create_session_factory
from tenantbot.services.credentials.store import CredentialStore
from tenantbot.services.crypto.cipher import TokenCipher
from tenantbot.services.crypto.secrets import build_token_cipher
from tenantbot.services.crypto.utils import decode_key_material


def _build_parser() -> argparse.ArgumentParser:
    # Read the new key from an env var so it never lands in shell history.
    parser = argparse.ArgumentParser(description="Re-encrypt stored credentials under a new key")
    parser.add_argument(
        "--new-key-env",
        required=True,
        help="environment variable holding the new base64 or hex key",
    )
    return parser


async def _rotate(new_key_env: str) -> int:
    settings = get_settings()
    raw = os.getenv(new_key_env)
    if not raw:
        raise ValueError(f"{new_key_env} is not set")
    new_cipher = TokenCipher(decode_key_material(raw))
    engine = create_engine(settings)
    try:
        store = CredentialStore(create_session_factory(engine), build_token_cipher(settings))
        rotated = await store.rotate_key(new_cipher)
    finally:
        await engine.dispose()
    print(f"credentials_rotated rows={rotated}")
    print(f"Update {settings.credential_encryption_key_name} to the new key before restarting workers.")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_rotate(args.new_key_env))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_credential_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
