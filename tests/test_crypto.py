"""Tests for email hashing and encryption."""

import base64
import os

import pytest

from screener.config import Settings
from screener.crypto import CipherError, EmailCipher

from conftest import ENCRYPTION_KEY

EMAIL = "Collector@Example.com"


@pytest.fixture
def cipher():
    return EmailCipher(base64.b64decode(ENCRYPTION_KEY))


def test_encrypt_round_trip(cipher):
    payload = cipher.encrypt(EMAIL)

    assert set(payload) == {"encrypted", "iv", "authTag"}
    assert len(base64.b64decode(payload["iv"])) == 12
    assert len(base64.b64decode(payload["authTag"])) == 16
    assert EMAIL not in payload["encrypted"]
    assert cipher.decrypt(payload) == EMAIL


def test_each_encryption_uses_a_fresh_iv(cipher):
    first = cipher.encrypt(EMAIL)
    second = cipher.encrypt(EMAIL)
    assert first["iv"] != second["iv"]
    assert first["encrypted"] != second["encrypted"]


def test_tampered_payload_is_rejected(cipher):
    payload = cipher.encrypt(EMAIL)
    tag = bytearray(base64.b64decode(payload["authTag"]))
    tag[0] ^= 0xFF
    payload["authTag"] = base64.b64encode(bytes(tag)).decode()

    with pytest.raises(CipherError, match="Decryption failed"):
        cipher.decrypt(payload)


def test_wrong_key_cannot_decrypt(cipher):
    payload = cipher.encrypt(EMAIL)
    with pytest.raises(CipherError):
        EmailCipher(os.urandom(32)).decrypt(payload)


def test_hash_round_trip(cipher):
    hashed = cipher.hash(EMAIL)

    assert hashed.startswith("$argon2id$v=19$m=65536,t=3,p=1$")
    assert cipher.verify(hashed, EMAIL)
    assert cipher.verify(hashed, "  collector@example.com ")
    assert not cipher.verify(hashed, "someone@example.com")
    assert not cipher.verify("not a hash", EMAIL)


@pytest.mark.asyncio
async def test_protect(cipher):
    record = await cipher.protect(EMAIL)

    assert cipher.verify(record["hash"], EMAIL)
    assert cipher.decrypt(record["encrypted"]) == EMAIL


def test_key_length_is_checked():
    with pytest.raises(CipherError):
        EmailCipher(b"too short")


def test_from_settings():
    configured = EmailCipher.from_settings(Settings(_env_file=None, encryption_key=ENCRYPTION_KEY))
    assert configured.can_encrypt

    unconfigured = EmailCipher.from_settings(Settings(_env_file=None, encryption_key=""))
    assert not unconfigured.can_encrypt
    with pytest.raises(CipherError):
        unconfigured.encrypt(EMAIL)

    with pytest.raises(CipherError, match="base64"):
        EmailCipher.from_settings(Settings(_env_file=None, encryption_key="not base64!"))
