"""Infrastructure components for SMS Bridge."""

from smsbridge_core.infrastructure.crypto import (
    CryptoService,
    DecryptionError,
    InvalidKeyError,
    get_crypto_service,
)

__all__ = [
    "CryptoService",
    "DecryptionError",
    "InvalidKeyError",
    "get_crypto_service",
]
