"""TransmitSMS gateway integration."""

from smsbridge_core.providers.transmitsms.adapter import (
    TransmitSmsAdapter,
    classify_error,
)

__all__ = [
    "TransmitSmsAdapter",
    "classify_error",
]
