"""AES-256-GCM decryption of stored third-party credentials."""

from __future__ import annotations

import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agent_conductor.errors import CredentialError
from agent_conductor.storage.models import EncryptedSecret

IV_BYTES = 16


class CredentialCipher(Protocol):
    def decrypt(self, secret: EncryptedSecret) -> str: ...


class AesGcmCredentialCipher:
    """Decrypt secrets stored as hex ciphertext, hex iv and hex auth tag.

    The key is 32 bytes given as 64 hex characters.
    """

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise CredentialError("Encryption key is not a valid hex string") from exc
        if len(key) != 32:
            raise CredentialError(
                f"Encryption key must be 32 bytes (64 hex characters), got {len(key)} bytes"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the 16-byte tag to the ciphertext.
        return EncryptedSecret(
            encrypted=sealed[:-16].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-16:].hex(),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        try:
            iv = bytes.fromhex(secret.iv)
            sealed = bytes.fromhex(secret.encrypted) + bytes.fromhex(secret.auth_tag)
            return self._aesgcm.decrypt(iv, sealed, None).decode("utf-8")
        except (ValueError, InvalidTag) as exc:
            raise CredentialError("Failed to decrypt credential") from exc
