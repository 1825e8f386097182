from __future__ import annotations

import json
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crosslist_dispatch.core.config import get_settings

KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16


class EncryptionError(Exception):
    """Raised when credentials cannot be encrypted or decrypted."""


class CredentialCipher:
    """AES-256-GCM cipher for marketplace credentials.

    Tokens are ``nonce:tag:ciphertext`` with each part hex encoded, so rows
    written by other services sharing the key stay readable.
    """

    def __init__(self, key_hex: str | None) -> None:
        self._key_hex = key_hex

    def encrypt(self, username: str, password: str) -> str:
        aesgcm = AESGCM(self._key())
        nonce = os.urandom(NONCE_LENGTH)
        payload = json.dumps({"username": username, "password": password}).encode("utf-8")
        sealed = aesgcm.encrypt(nonce, payload, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> tuple[str, str]:
        """Read side used by the worker before it hands a job to the automation service."""
        parts = token.split(":")
        if len(parts) != 3:
            raise EncryptionError("invalid encrypted credentials format")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise EncryptionError("invalid encrypted credentials format") from exc

        try:
            plaintext = AESGCM(self._key()).decrypt(nonce, ciphertext + tag, None)
        except (InvalidTag, ValueError) as exc:
            raise EncryptionError("failed to decrypt credentials") from exc

        try:
            data = json.loads(plaintext.decode("utf-8"))
            return data["username"], data["password"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EncryptionError("decrypted credentials are malformed") from exc

    def _key(self) -> bytes:
        if not self._key_hex:
            raise EncryptionError("CD_CREDENTIALS_ENCRYPTION_KEY is not set")
        try:
            key = bytes.fromhex(self._key_hex)
        except ValueError as exc:
            raise EncryptionError("encryption key must be hex encoded") from exc
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"encryption key must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex characters)")
        return key


@lru_cache
def get_cipher() -> CredentialCipher:
    return CredentialCipher(get_settings().credentials_encryption_key)
