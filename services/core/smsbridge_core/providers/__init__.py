"""Provider integrations for the SMS bridge.

This package contains provider-specific implementations:
- Base: Abstract gateway interface and DTOs
- TransmitSMS: SMS gateway adapter
- Eloqua: Marketing platform REST client
"""

from smsbridge_core.providers.base import (
    AccountBalance,
    GatewayError,
    SenderIds,
    SmsGateway,
    SmsSendOptions,
    SmsSendResult,
    TrackedLink,
)

__all__ = [
    "AccountBalance",
    "GatewayError",
    "SenderIds",
    "SmsGateway",
    "SmsSendOptions",
    "SmsSendResult",
    "TrackedLink",
]
