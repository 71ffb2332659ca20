"""TransmitSMS API adapter.

Implements the SmsGateway interface over the TransmitSMS REST API.
Requests use HTTP Basic auth with the tenant's API key and secret;
POST bodies are form-encoded.

Usage:
    gateway = TransmitSmsAdapter(api_key="...", api_secret="...")
    result = await gateway.send_sms(
        "+61412345678",
        "Hi Ada",
        SmsSendOptions(sender_id="ACME", dlr_callback="https://..."),
    )
    result.message_id
"""

import logging
from typing import Any, Optional

import httpx

from smsbridge_core.domain.models import ErrorKind
from smsbridge_core.providers.base import (
    AccountBalance,
    GatewayError,
    SenderIds,
    SmsGateway,
    SmsSendOptions,
    SmsSendResult,
    TrackedLink,
)

logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://api.transmitsms.com"
DEFAULT_TIMEOUT_SECONDS = 30.0

TRACKED_LINK_TOKEN = "[tracked-link]"

# Gateway error codes that map onto a specific ErrorKind
ERROR_CODE_KINDS = {
    "AUTH_FAILED": ErrorKind.AUTH_REJECTED,
    "AUTH_FAILED_NO_DATA": ErrorKind.AUTH_REJECTED,
    "NO_ACCESS": ErrorKind.AUTH_REJECTED,
    "LEDGER_ERROR": ErrorKind.QUOTA_EXHAUSTED,
    "OVER_LIMIT": ErrorKind.RATE_LIMITED,
    "RECIPIENTS_ERROR": ErrorKind.INVALID_RECIPIENT,
    "BAD_RECIPIENT": ErrorKind.INVALID_RECIPIENT,
}


def classify_error(status_code: int, code: Optional[str] = None) -> str:
    """Map an HTTP status and gateway error code to an ErrorKind."""
    if code and code.upper() in ERROR_CODE_KINDS:
        return ERROR_CODE_KINDS[code.upper()]
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if status_code in (401, 403):
        return ErrorKind.AUTH_REJECTED
    if status_code == 402:
        return ErrorKind.QUOTA_EXHAUSTED
    return ErrorKind.CLIENT_ERROR


class TransmitSmsAdapter(SmsGateway):
    """TransmitSMS gateway adapter."""

    SEND_SMS = "/send-sms.json"
    ADD_TRACKED_LINK = "/add-tracked-link.json"
    GET_SENDER_IDS = "/get-sender-ids.json"
    EDIT_NUMBER_OPTIONS = "/edit-number-options.json"
    GET_BALANCE = "/get-balance.json"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the adapter.

        Args:
            api_key: Tenant API key.
            api_secret: Tenant API secret.
            base_url: API base URL.
            timeout: Total per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def gateway_id(self) -> str:
        return "transmitsms"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.api_key, self.api_secret),
            timeout=self.timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Make an API request and return the decoded body.

        GET sends data as query parameters, POST as a form body.
        None values are dropped.

        Raises:
            GatewayError: On transport failure, error status or
                undecodable body.
        """
        payload = {k: v for k, v in (data or {}).items() if v is not None}

        try:
            async with self._client() as client:
                if method == "GET":
                    response = await client.get(endpoint, params=payload)
                else:
                    response = await client.request(method, endpoint, data=payload)
        except httpx.TimeoutException as e:
            raise GatewayError(f"TransmitSMS request timed out: {endpoint}", ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise GatewayError(f"TransmitSMS unreachable: {e}", ErrorKind.NETWORK) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            code = error.get("code") if isinstance(error, dict) else None
            description = (
                error.get("description") if isinstance(error, dict) else None
            ) or response.text[:500]
            kind = classify_error(response.status_code, code)
            logger.warning(
                "TransmitSMS API error %s %s: %s (%s)",
                method, endpoint, response.status_code, code,
            )
            raise GatewayError(
                f"TransmitSMS API Error ({response.status_code}): {description}",
                kind=kind,
                status_code=response.status_code,
                code=code,
            )

        if not isinstance(body, dict):
            raise GatewayError(
                f"Unexpected TransmitSMS response from {endpoint}",
                ErrorKind.SERVER_ERROR,
                status_code=response.status_code,
            )

        return body

    async def send_sms(self, to: str, message: str, options: SmsSendOptions) -> SmsSendResult:
        """Send one SMS.

        Raises:
            GatewayError: With kind CONFIGURATION if the message uses a
                tracked link but no tracked-link URL is set, otherwise as
                classified from the API response.
        """
        data: dict[str, Any] = {
            "to": to,
            "message": message,
            "from": options.sender_id,
            "validity": options.validity,
            "dlr_callback": options.dlr_callback,
            "reply_callback": options.reply_callback,
            "link_hits_callback": options.link_hits_callback,
        }

        if TRACKED_LINK_TOKEN in message:
            if not options.tracked_link_url:
                raise GatewayError(
                    "Message contains [tracked-link] but no tracked link URL is configured",
                    ErrorKind.CONFIGURATION,
                )
            data["tracked_link_url"] = options.tracked_link_url

        body = await self._request("POST", self.SEND_SMS, data)

        message_id = body.get("message_id")
        if not message_id:
            raise GatewayError("TransmitSMS response has no message_id", ErrorKind.SERVER_ERROR)

        tracked = body.get("tracked_link") or {}
        short_url = tracked.get("short_url") if isinstance(tracked, dict) else None
        original_url = tracked.get("original_url") if isinstance(tracked, dict) else None
        if options.tracked_link_url and TRACKED_LINK_TOKEN in message:
            original_url = original_url or options.tracked_link_url

        return SmsSendResult(
            message_id=str(message_id),
            tracked_link_short_url=short_url,
            tracked_link_original_url=original_url,
            cost=body.get("cost"),
            raw=body,
        )

    async def add_tracked_link(self, url: str, title: Optional[str] = None) -> TrackedLink:
        body = await self._request("POST", self.ADD_TRACKED_LINK, {"url": url, "title": title})
        result = body.get("result") if isinstance(body.get("result"), dict) else body
        short_url = result.get("short_url")
        if not short_url:
            raise GatewayError("TransmitSMS did not return a short_url", ErrorKind.SERVER_ERROR)
        return TrackedLink(short_url=short_url, original_url=url)

    async def get_sender_ids(self) -> SenderIds:
        """List caller ids grouped by kind; empty groups on any failure."""
        try:
            body = await self._request("GET", self.GET_SENDER_IDS)
        except GatewayError as e:
            logger.error("Error fetching sender IDs: %s", e)
            return SenderIds()

        caller_ids = (body.get("result") or {}).get("caller_ids") or {}
        return SenderIds(
            virtual_numbers=[str(v) for v in caller_ids.get("Virtual Number") or []],
            business_names=[str(v) for v in caller_ids.get("Business Name") or []],
            mobile_numbers=[str(v) for v in caller_ids.get("Mobile Number") or []],
        )

    async def configure_number_forwarding(self, number: str, forward_url: str) -> dict[str, Any]:
        logger.info("Configuring number forwarding for %s", number)
        return await self._request(
            "GET",
            self.EDIT_NUMBER_OPTIONS,
            {"number": number, "forward_url": forward_url},
        )

    async def get_balance(self) -> AccountBalance:
        body = await self._request("GET", self.GET_BALANCE)
        return AccountBalance(
            balance=float(body.get("balance") or 0),
            currency=body.get("currency"),
        )
