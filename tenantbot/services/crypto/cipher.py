from __future__ import annotations

import binascii
import os
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantbot.core.errors import CredentialEncryptionError, EncryptionKeyError
from tenantbot.services.crypto.utils import b64decode_str, b64encode_bytes


KEY_BYTES: Final[int] = 32
IV_BYTES: Final[int] = 12
TAG_BYTES: Final[int] = 16


class TokenCipher:
    """AES-256-GCM cipher for provider tokens at rest.

    Ciphertext is packed as base64(iv || auth_tag || ciphertext) so one text
    column holds everything needed to authenticate and decrypt a value.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise EncryptionKeyError(f"encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        # Fresh random IV per call; an IV must never repeat under one key.
        iv = os.urandom(IV_BYTES)
        try:
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except (OverflowError, ValueError) as exc:
            raise CredentialEncryptionError("token encryption failed", operation="encrypt") from exc
        # AESGCM appends the tag; store it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return b64encode_bytes(iv + tag + ciphertext)

    def decrypt(self, packed: str) -> str:
        try:
            raw = b64decode_str(packed)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise CredentialEncryptionError("ciphertext is not valid base64", operation="decrypt") from exc
        if len(raw) < IV_BYTES + TAG_BYTES:
            raise CredentialEncryptionError("ciphertext is truncated", operation="decrypt")
        iv = raw[:IV_BYTES]
        tag = raw[IV_BYTES : IV_BYTES + TAG_BYTES]
        ciphertext = raw[IV_BYTES + TAG_BYTES :]
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialEncryptionError(
                "ciphertext failed authentication (corrupt data or wrong key)",
                operation="decrypt",
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialEncryptionError("decrypted token is not utf-8", operation="decrypt") from exc

    def rotate(self, packed: str, new_cipher: "TokenCipher") -> str:
        # Re-encrypt under another key without exposing plaintext to callers.
        return new_cipher.encrypt(self.decrypt(packed))
