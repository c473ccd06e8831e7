"""
clipportal.services.crypto — At-Rest Field Encryption
======================================================

Emails and audit details are sealed with AES-256-GCM (``cryptography``)
before they reach the database.  Each value gets a fresh random 96-bit
nonce; the stored form is::

    enc:v1:<urlsafe-base64(nonce ‖ ciphertext ‖ tag)>

Because the ciphertext is randomised, uniqueness checks use a separate
**blind index**: an HMAC-SHA256 of the lower-cased email under a key
derived from the encryption key.

Without ``CLIPPORTAL_ENCRYPTION_KEY`` the cipher runs in *clear mode*:
values are stored as-is and the blind index is simply the lower-cased
email.  This is the documented weaker mode for local development.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

PREFIX = "enc:v1:"
NONCE_SIZE = 12
_AAD = b"clipportal-field-v1"
_INDEX_LABEL = b"clipportal-email-index"


class FieldCipher:
    """Authenticated encryption for individual text columns."""

    def __init__(self, key: bytes | None = None) -> None:
        if key is not None and len(key) != 32:
            raise ValueError("Encryption key must be exactly 32 bytes (64 hex characters)")
        self._aead = AESGCM(key) if key else None
        self._index_key = (
            hmac.new(key, _INDEX_LABEL, hashlib.sha256).digest() if key else None
        )

    @classmethod
    def from_env(cls) -> FieldCipher:
        """Build from ``CLIPPORTAL_ENCRYPTION_KEY`` (64 hex chars).

        Raises
        ------
        RuntimeError
            If the variable is set but is not a valid 32-byte hex key.
        """
        raw = os.getenv("CLIPPORTAL_ENCRYPTION_KEY", "").strip()
        if not raw:
            logger.warning(
                "CLIPPORTAL_ENCRYPTION_KEY is not set; emails will be stored in clear text"
            )
            return cls(None)
        try:
            key = bytes.fromhex(raw)
            return cls(key)
        except ValueError as exc:
            raise RuntimeError(
                "CLIPPORTAL_ENCRYPTION_KEY must be 64 hex characters. "
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            ) from exc

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        return bool(value) and value.startswith(PREFIX)

    def encrypt(self, text: str | None) -> str | None:
        if text is None or self._aead is None:
            return text
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, text.encode("utf-8"), _AAD)
        return PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: str | None) -> str | None:
        """Return the plaintext for *value*.

        Unprefixed values pass through unchanged.  A value that cannot be
        opened (wrong key, truncated, tampered) is returned as stored so one
        bad row never breaks a whole listing.
        """
        if not self.is_encrypted(value):
            return value
        if self._aead is None:
            logger.warning("Encrypted value found but no key is configured")
            return value
        try:
            blob = base64.urlsafe_b64decode(value[len(PREFIX):].encode("ascii"))
            nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
            return self._aead.decrypt(nonce, sealed, _AAD).decode("utf-8")
        except (InvalidTag, ValueError, UnicodeDecodeError):
            logger.warning("Could not decrypt stored field; returning raw value")
            return value

    def blind_index(self, email: str) -> str:
        """Deterministic lookup key for a (case-insensitive) email."""
        normalized = email.strip().lower()
        if self._index_key is None:
            return normalized
        return hmac.new(self._index_key, normalized.encode("utf-8"), hashlib.sha256).hexdigest()
