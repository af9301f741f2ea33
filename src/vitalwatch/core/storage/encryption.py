"""Fernet-based encryption for free-text health fields at rest.

Alert responses, resolutions, medical review notes and goal progress notes
are written by people and may contain anything. They are encrypted before
they reach SQLite. Numeric values, enums and timestamps stay in the clear so
the repository can filter and sort on them.
"""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class FieldEncryptor:
    """Encrypts and decrypts optional text fields with Fernet.

    ``None`` passes through untouched in both directions so nullable
    columns stay NULL.

    Usage::

        encryptor = FieldEncryptor(key="...")
        token = encryptor.encrypt("felt dizzy after the run")
        encryptor.decrypt(token)  # "felt dizzy after the run"
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate one with
                :meth:`generate_key`.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, text: str | None) -> str | None:
        """Encrypt a text value to a Fernet token string."""
        if text is None:
            return None
        try:
            return self._fernet.encrypt(text.encode("utf-8")).decode("utf-8")
        except (AttributeError, TypeError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc

    def decrypt(self, token: str | None) -> str | None:
        """Decrypt a Fernet token string back to text.

        Raises:
            EncryptionError: If the token is invalid or was written with
                another key.
        """
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new URL-safe base64-encoded 32-byte Fernet key."""
        return Fernet.generate_key().decode("utf-8")
