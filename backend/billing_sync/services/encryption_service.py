"""
Encryption service for provider credentials at rest.

WHAT: Symmetric encryption with Fernet for provider access and refresh tokens.

WHY: A leaked database dump must not hand out publishers' payment accounts.
Tokens are encrypted before they reach the DAO and decrypted only when a
provider call needs them.

HOW: Fernet (cryptography) gives AES-128-CBC with HMAC-SHA256 and URL-safe
base64 output.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from billing_sync.core.exceptions import EncryptionError

logger = logging.getLogger(__name__)


class EncryptionService:
    """
    Encrypts and decrypts token strings.

    Example:
        service = EncryptionService(settings.ENCRYPTION_KEY)
        stored = service.encrypt(tokens.access_token)
    """

    def __init__(self, key: Optional[str]):
        """
        Args:
            key: Fernet key (32 bytes, URL-safe base64)

        Raises:
            EncryptionError: If key is missing or invalid.
        """
        if not key:
            logger.error("Encryption key not configured")
            raise EncryptionError(
                message="Encryption key not configured",
                hint="Set ENCRYPTION_KEY environment variable",
            )

        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid encryption key format: {type(e).__name__}")
            raise EncryptionError(
                message="Invalid encryption key format",
                hint="Key must be 32 bytes, URL-safe base64-encoded",
            )

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Raises:
            EncryptionError: If the value is empty
        """
        if not plaintext:
            raise EncryptionError(message="Cannot encrypt empty value")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            EncryptionError: If the token is empty, corrupted or from another key
        """
        if not ciphertext:
            raise EncryptionError(message="Cannot decrypt empty value")

        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("Decryption failed: invalid token or wrong key")
            raise EncryptionError(
                message="Failed to decrypt data",
                error="Invalid token - data may be corrupted or key changed",
            )

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key (for setup and key rotation)."""
        return Fernet.generate_key().decode()
