"""Email protection at rest.

An argon2id hash identifies the address without revealing it, and an
AES-256-GCM envelope ``{encrypted, iv, authTag}`` (all base64) lets the
delivery side recover it. The key is 32 bytes, configured base64-encoded.
"""

import asyncio
import base64
import binascii
import logging
import os
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Settings
from .errors import ScreenerError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


class CipherError(ScreenerError):
    code = "cipher_error"


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CipherError(f"{what} is not valid base64") from e


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def email_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=3, memory_cost=2**16, parallelism=1, type=Type.ID)


class EmailCipher:
    """Hashes and encrypts email addresses.

    Hashing works without a key. ``encrypt``/``decrypt`` raise ``CipherError``
    until a key is configured.
    """

    def __init__(self, key: Optional[bytes] = None, hasher: Optional[PasswordHasher] = None):
        if key is not None and len(key) != KEY_BYTES:
            raise CipherError(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key) if key is not None else None
        self._hasher = hasher or email_hasher()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailCipher":
        if not settings.encryption_key:
            logger.warning("ENCRYPTION_KEY is not set; email submissions will be rejected")
            return cls()
        return cls(_b64decode(settings.encryption_key, "ENCRYPTION_KEY"))

    @property
    def can_encrypt(self) -> bool:
        return self._aead is not None

    # ---------- hashing ----------

    def hash(self, email: str) -> str:
        return self._hasher.hash(email.strip().lower())

    def verify(self, hashed: str, email: str) -> bool:
        try:
            return self._hasher.verify(hashed, email.strip().lower())
        except (VerificationError, InvalidHashError):
            return False

    # ---------- AES-256-GCM ----------

    def encrypt(self, text: str) -> dict[str, str]:
        if self._aead is None:
            raise CipherError("Email encryption is not configured")
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, text.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        return {
            "encrypted": _b64encode(sealed[:-TAG_BYTES]),
            "iv": _b64encode(iv),
            "authTag": _b64encode(sealed[-TAG_BYTES:]),
        }

    def decrypt(self, payload: dict) -> str:
        if self._aead is None:
            raise CipherError("Email encryption is not configured")
        try:
            ciphertext = _b64decode(payload["encrypted"], "encrypted")
            iv = _b64decode(payload["iv"], "iv")
            tag = _b64decode(payload["authTag"], "authTag")
        except KeyError as e:
            raise CipherError(f"Encrypted payload is missing {e.args[0]}") from e
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            raise CipherError("Decryption failed") from e

    async def protect(self, email: str) -> dict:
        """``{hash, encrypted}`` for the session metadata. Hashing runs off the loop."""
        encrypted = self.encrypt(email)
        hashed = await asyncio.to_thread(self.hash, email)
        return {"hash": hashed, "encrypted": encrypted}
