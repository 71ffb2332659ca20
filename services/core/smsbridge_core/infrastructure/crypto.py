"""Encryption of tenant secrets at rest.

Gateway API keys/secrets and the platform access token are stored
Fernet-encrypted on the tenant row and decrypted only when a request
to the gateway or platform is about to be made.

Usage:
    crypto = get_crypto_service()
    stored = crypto.encrypt("api-secret")
    secret = crypto.decrypt(stored)
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from smsbridge_core.config import get_settings


class InvalidKeyError(Exception):
    """Raised when an invalid encryption key is provided."""

    pass


class DecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""

    pass


class CryptoService:
    """Fernet wrapper used for tenant credentials."""

    def __init__(self, key: str):
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key (base64-encoded 32-byte key).

        Raises:
            InvalidKeyError: If the key is empty or malformed.
        """
        if not key:
            raise InvalidKeyError("Encryption key cannot be empty")

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise InvalidKeyError(f"Invalid encryption key: {e}")

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return token.decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored secret.

        Raises:
            DecryptionError: If the token was not produced with this key.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(f"Failed to decrypt: {e}")

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self.encrypt(plaintext)

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        return self.decrypt(ciphertext)


def get_crypto_service() -> CryptoService:
    """Build a CryptoService from the configured key."""
    return CryptoService(get_settings().encryption_key)
