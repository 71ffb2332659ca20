"""SMS gateway interface and DTOs.

Defines the gateway-agnostic interface the dispatch worker and the
settings routes talk to, together with the normalized objects passed
across it. Gateway failures are raised as GatewayError carrying an
ErrorKind so the job queue can decide between retry and terminal
failure without knowing the gateway's error vocabulary.

Usage:
    class TransmitSmsAdapter(SmsGateway):
        async def send_sms(self, to, message, options) -> SmsSendResult:
            ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from smsbridge_core.domain.models import ErrorKind


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
    ErrorKind.SERVER_ERROR,
    ErrorKind.RATE_LIMITED,
})


# =============================================================================
# EXCEPTIONS
# =============================================================================


class GatewayError(Exception):
    """Raised when a gateway call fails.

    Attributes:
        kind: ErrorKind classification.
        status_code: HTTP status, 0 when no response was received.
        code: Gateway-specific error code, if any.
    """

    def __init__(
        self,
        message: str,
        kind: str = ErrorKind.CLIENT_ERROR,
        status_code: int = 0,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SmsSendOptions:
    """Per-message send options.

    Callback URLs already carry the correlation query string.
    """

    sender_id: Optional[str] = None
    validity: Optional[int] = None
    tracked_link_url: Optional[str] = None
    dlr_callback: Optional[str] = None
    reply_callback: Optional[str] = None
    link_hits_callback: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]], sender_id: Optional[str] = None) -> "SmsSendOptions":
        data = data or {}
        validity = data.get("validity")
        return cls(
            sender_id=sender_id,
            validity=int(validity) if validity not in (None, "") else None,
            tracked_link_url=data.get("tracked_link_url"),
            dlr_callback=data.get("dlr_callback"),
            reply_callback=data.get("reply_callback"),
            link_hits_callback=data.get("link_hits_callback"),
        )


@dataclass
class SmsSendResult:
    """Normalized gateway response to a send."""

    message_id: str
    tracked_link_short_url: Optional[str] = None
    tracked_link_original_url: Optional[str] = None
    cost: Optional[float] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackedLink:
    short_url: str
    original_url: Optional[str] = None


@dataclass
class SenderIds:
    """Sender ids available to an account, grouped by kind."""

    virtual_numbers: list[str] = field(default_factory=list)
    business_names: list[str] = field(default_factory=list)
    mobile_numbers: list[str] = field(default_factory=list)

    def all(self) -> list[str]:
        return [*self.virtual_numbers, *self.business_names, *self.mobile_numbers]


@dataclass
class AccountBalance:
    balance: float
    currency: Optional[str] = None


# =============================================================================
# GATEWAY INTERFACE
# =============================================================================


class SmsGateway(ABC):
    """Abstract SMS gateway."""

    @property
    @abstractmethod
    def gateway_id(self) -> str:
        """Return the gateway identifier."""
        pass

    @abstractmethod
    async def send_sms(self, to: str, message: str, options: SmsSendOptions) -> SmsSendResult:
        """Send one SMS.

        Raises:
            GatewayError: If the gateway rejects the message or cannot
                be reached.
        """
        pass

    @abstractmethod
    async def add_tracked_link(self, url: str, title: Optional[str] = None) -> TrackedLink:
        """Register a URL for click tracking."""
        pass

    @abstractmethod
    async def get_sender_ids(self) -> SenderIds:
        """List sender ids; never raises, empty groups on failure."""
        pass

    @abstractmethod
    async def configure_number_forwarding(self, number: str, forward_url: str) -> dict[str, Any]:
        """Point a virtual number's inbound messages at forward_url."""
        pass

    @abstractmethod
    async def get_balance(self) -> AccountBalance:
        pass

    async def validate_credentials(self) -> bool:
        """Return True if the configured credentials are accepted."""
        try:
            await self.get_balance()
        except GatewayError:
            return False
        return True
