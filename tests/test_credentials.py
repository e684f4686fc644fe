from __future__ import annotations

import pytest

from agent_conductor.credentials import AesGcmCredentialCipher
from agent_conductor.errors import CredentialError
from conftest import TEST_KEY


def test_encrypted_secret_decrypts_with_same_key() -> None:
    cipher = AesGcmCredentialCipher(TEST_KEY)

    secret = cipher.encrypt("ghp_example_token")

    assert "ghp_example_token" not in secret.encrypted
    assert len(bytes.fromhex(secret.iv)) == 16
    assert len(bytes.fromhex(secret.auth_tag)) == 16
    assert cipher.decrypt(secret) == "ghp_example_token"


def test_tampered_ciphertext_is_rejected() -> None:
    cipher = AesGcmCredentialCipher(TEST_KEY)
    secret = cipher.encrypt("xoxb-slack")
    flipped = format(int(secret.encrypted[:2], 16) ^ 0xFF, "02x") + secret.encrypted[2:]

    with pytest.raises(CredentialError):
        cipher.decrypt(secret.model_copy(update={"encrypted": flipped}))


def test_other_key_cannot_decrypt() -> None:
    secret = AesGcmCredentialCipher(TEST_KEY).encrypt("token")

    with pytest.raises(CredentialError):
        AesGcmCredentialCipher("ff" * 32).decrypt(secret)


@pytest.mark.parametrize("key", ["abcd", "zz" * 32, ""])
def test_key_must_be_32_hex_bytes(key: str) -> None:
    with pytest.raises(CredentialError):
        AesGcmCredentialCipher(key)
