"""Webhook event reconciler.

Correlates gateway callbacks with previously dispatched messages:

- delivery receipts update the matching audit entry's status;
- replies become SmsReply events (for the incoming-SMS feeder) and mark
  the audit entry as answered, resolving a pending decision to "yes";
- link hits become one LinkHit event per reported click.

Correlation is by gateway message id first, then by the most recent
send to the same mobile number. The installId query hint carried on
callback URLs scopes both lookups to that tenant, so a number shared by
two installs is attributed to the one the callback was registered for.
Events that match no send are still stored against the hinted tenant;
events with no tenant at all are kept as UnmatchedWebhook rows.

A receipt never moves an entry out of a final status back to sent or
pending.

Handlers return a WebhookResult and never raise; a failed handler rolls
back its own writes and logs the payload.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smsbridge_core.domain.models import (
    DecisionStatus,
    LinkHit,
    SmsLog,
    SmsReply,
    SmsStatus,
    UnmatchedWebhook,
    utcnow,
)
from smsbridge_core.domain.services.audit import AuditService
from smsbridge_core.domain.services.decisions import reply_matches
from smsbridge_core.domain.services.instances import InstanceService
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.observability.metrics import (
    WEBHOOK_DLR,
    WEBHOOK_LINKHIT,
    WEBHOOK_REPLY,
    get_collector,
)

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================


DLR_STATUS_MAP = {
    "delivered": SmsStatus.DELIVERED,
    "sent": SmsStatus.SENT,
    "failed": SmsStatus.FAILED,
    "rejected": SmsStatus.FAILED,
    "undelivered": SmsStatus.FAILED,
    "expired": SmsStatus.EXPIRED,
    "pending": SmsStatus.PENDING,
}

FINAL_STATUSES = frozenset({SmsStatus.DELIVERED, SmsStatus.FAILED, SmsStatus.EXPIRED})

OPT_OUT_KEYWORDS = frozenset({"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})

URL_PATTERN = re.compile(r"https?://\S+")
SHORT_LINK_HOSTS = ("tapth.is", "tap.th")

MAX_LINK_HITS = 1000


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class WebhookResult:
    """Outcome of handling one webhook."""

    success: bool
    matched: bool = False
    sms_log_id: Optional[int] = None
    event_ids: tuple[int, ...] = ()
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.error:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = "unknown"
    browser: Optional[str] = None
    os: Optional[str] = None


# =============================================================================
# PARSING HELPERS
# =============================================================================


def map_dlr_status(status: Optional[str]) -> str:
    """Map a gateway DLR status to an audit status; unknown is pending."""
    return DLR_STATUS_MAP.get((status or "").strip().lower(), SmsStatus.PENDING)


def is_opt_out(message: Optional[str], flag: Optional[str] = None) -> bool:
    if str(flag or "").strip().lower() == "yes":
        return True
    return (message or "").strip().upper() in OPT_OUT_KEYWORDS


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a gateway timestamp into naive UTC.

    Accepts ISO 8601 (with or without offset, "T" or space separator)
    and unix epoch seconds. Returns None when unparseable.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc).replace(tzinfo=None)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Coarse device/browser/OS classification from a user agent."""
    if not user_agent:
        return DeviceInfo()
    ua = user_agent.lower()

    if "ipad" in ua or "tablet" in ua:
        device = "tablet"
    elif "mobile" in ua or "android" in ua or "iphone" in ua:
        device = "mobile"
    elif "windows" in ua or "mac" in ua or "linux" in ua:
        device = "desktop"
    else:
        device = "unknown"

    if "edg" in ua:
        browser = "Edge"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "chrome" in ua or "crios" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = None

    if "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = None

    return DeviceInfo(device_type=device, browser=browser, os=os_name)


def extract_short_url(message: Optional[str]) -> Optional[str]:
    """The gateway short link in a message, else its first URL."""
    urls = URL_PATTERN.findall(message or "")
    for url in urls:
        if any(host in url.lower() for host in SHORT_LINK_HOSTS):
            return url
    return urls[0] if urls else None


def _hit_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 1
    return max(1, min(count, MAX_LINK_HITS))


def _text(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value in (None, ""):
        return None
    return str(value)


# =============================================================================
# SERVICE
# =============================================================================


class ReconcilerService:
    """Service for reconciling gateway webhooks against the audit log."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        """Initialize the reconciler.

        Args:
            db: SQLAlchemy database session.
            clock: Returns the current naive-UTC time.
        """
        self.db = db
        self.clock = clock
        self.audit = AuditService(db)
        self.instances = InstanceService(db)

    def _guarded(self, event: str, payload: Mapping[str, Any], handler) -> WebhookResult:
        try:
            return handler(payload)
        except (SQLAlchemyError, ValueError, TypeError, KeyError) as e:
            self.db.rollback()
            logger.error(
                f"webhook.{event}_failed",
                exc_info=True,
                payload=dict(payload),
            )
            return WebhookResult(success=False, error=str(e))

    # -------------------------------------------------------------------------
    # Delivery receipts
    # -------------------------------------------------------------------------

    def handle_dlr(self, payload: Mapping[str, Any]) -> WebhookResult:
        """Apply a delivery receipt to its audit entry.

        An unknown message id changes nothing and is logged.
        """
        return self._guarded("dlr", payload, self._handle_dlr)

    def _handle_dlr(self, payload: Mapping[str, Any]) -> WebhookResult:
        message_id = _text(payload, "message_id")
        entry = self.audit.get_by_message_id(message_id)

        if entry is None:
            get_collector().increment(WEBHOOK_DLR, labels={"matched": "false"})
            logger.warning(
                "webhook.dlr_unmatched",
                message_id=message_id,
                status=_text(payload, "status"),
                install_id=_text(payload, "installId"),
                payload=dict(payload),
            )
            self._keep_unmatched("dlr", payload)
            return WebhookResult(success=True, matched=False)

        now = self.clock()
        status = map_dlr_status(_text(payload, "status"))
        if entry.status in FINAL_STATUSES and status not in FINAL_STATUSES:
            logger.info(
                "webhook.dlr_stale",
                message_id=message_id,
                current=entry.status,
                received=status,
                sms_log_id=entry.id,
            )
            return WebhookResult(success=True, matched=True, sms_log_id=entry.id)
        entry.status = status

        if status == SmsStatus.DELIVERED:
            delivered_at = parse_timestamp(payload.get("datetime")) or now
            if entry.sent_at and delivered_at < entry.sent_at:
                delivered_at = entry.sent_at
            entry.delivered_at = delivered_at

        error_code = _text(payload, "error_code")
        if error_code:
            entry.error_code = error_code
            entry.error_message = _text(payload, "error_text") or f"Error code: {error_code}"

        webhook_data = dict(entry.webhook_data or {})
        webhook_data["dlr"] = dict(payload)
        webhook_data["dlr_received_at"] = now.isoformat()
        entry.webhook_data = webhook_data
        self.db.flush()

        get_collector().increment(WEBHOOK_DLR, labels={"matched": "true"})
        logger.info(
            "webhook.dlr_processed",
            message_id=message_id,
            status=status,
            sms_log_id=entry.id,
        )
        return WebhookResult(success=True, matched=True, sms_log_id=entry.id)

    # -------------------------------------------------------------------------
    # Replies
    # -------------------------------------------------------------------------

    def handle_reply(self, payload: Mapping[str, Any]) -> WebhookResult:
        """Store a reply and mark its originating send as answered."""
        return self._guarded("reply", payload, self._handle_reply)

    def _handle_reply(self, payload: Mapping[str, Any]) -> WebhookResult:
        from_number = _text(payload, "mobile")
        message_id = _text(payload, "message_id")
        install_hint = _text(payload, "installId")
        entry = self._correlate(message_id, from_number, install_hint)

        install_id = entry.install_id if entry else install_hint
        if install_id is None:
            get_collector().increment(WEBHOOK_REPLY, labels={"matched": "false"})
            logger.warning(
                "webhook.reply_unattributed",
                message_id=message_id,
                from_number=from_number,
                payload=dict(payload),
            )
            self._keep_unmatched("reply", payload)
            return WebhookResult(success=False, error="Unable to attribute reply to an install")

        reply = self._store_reply(payload, install_id, entry)
        if entry is not None:
            self._mark_answered(entry, reply)

        get_collector().increment(
            WEBHOOK_REPLY, labels={"matched": "true" if entry else "false"}
        )
        logger.info(
            "webhook.reply_saved",
            reply_id=reply.id,
            from_number=from_number,
            is_opt_out=reply.is_opt_out,
            linked=entry is not None,
        )
        return WebhookResult(
            success=True,
            matched=entry is not None,
            sms_log_id=entry.id if entry else None,
            event_ids=(reply.id,),
        )

    def incoming_sms(
        self,
        instance_id: Optional[str],
        install_id: Optional[str],
        payload: Mapping[str, Any],
    ) -> WebhookResult:
        """Store an SMS forwarded from a watched virtual number.

        The reply is enriched with the contact of the most recent send to
        the same mobile number, but does not touch that send.
        """
        def handler(data: Mapping[str, Any]) -> WebhookResult:
            tenant_id = install_id or _text(data, "installId")
            if tenant_id is None and instance_id:
                feeder = self.instances.get_feeder(instance_id)
                tenant_id = feeder.install_id if feeder else None
            if tenant_id is None:
                logger.warning("webhook.incoming_sms_dropped", instance_id=instance_id)
                return WebhookResult(success=False, error="Unknown install")

            entry = self.audit.latest_for_mobile(_text(data, "mobile"), install_id=tenant_id)
            reply = self._store_reply(data, tenant_id, entry, link=False)
            get_collector().increment(WEBHOOK_REPLY, labels={"matched": "forwarded"})
            logger.info(
                "webhook.incoming_sms_saved",
                reply_id=reply.id,
                instance_id=instance_id,
            )
            return WebhookResult(success=True, matched=entry is not None, event_ids=(reply.id,))

        return self._guarded("incoming_sms", payload, handler)

    def _store_reply(
        self,
        payload: Mapping[str, Any],
        install_id: str,
        entry: Optional[SmsLog],
        link: bool = True,
    ) -> SmsReply:
        message = _text(payload, "response") or ""
        reply = SmsReply(
            install_id=install_id,
            sms_log_id=entry.id if entry is not None and link else None,
            contact_id=entry.contact_id if entry else _text(payload, "contactId"),
            email_address=entry.email_address if entry else _text(payload, "emailAddress"),
            from_number=_text(payload, "mobile") or "",
            to_number=_text(payload, "longcode"),
            message=message,
            message_id=_text(payload, "message_id"),
            response_id=_text(payload, "response_id"),
            received_at=parse_timestamp(payload.get("datetime_entry")) or self.clock(),
            is_opt_out=is_opt_out(message, _text(payload, "is_optout")),
            processed=False,
            webhook_data=dict(payload),
        )
        self.db.add(reply)
        self.db.flush()
        return reply

    def _mark_answered(self, entry: SmsLog, reply: SmsReply) -> None:
        entry.has_response = True
        entry.response_id = reply.id

        if (
            entry.decision_status == DecisionStatus.PENDING
            and entry.decision_deadline is not None
            and reply.received_at <= entry.decision_deadline
            and self._matches_decision(entry, reply.message)
        ):
            entry.decision_status = DecisionStatus.YES
        self.db.flush()

    def _matches_decision(self, entry: SmsLog, message: str) -> bool:
        if not entry.decision_instance_id:
            return True
        return reply_matches(self.instances.get_decision(entry.decision_instance_id), message)

    # -------------------------------------------------------------------------
    # Link hits
    # -------------------------------------------------------------------------

    def handle_link_hit(
        self,
        payload: Mapping[str, Any],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> WebhookResult:
        """Store one LinkHit per reported click."""
        return self._guarded(
            "linkhit",
            payload,
            lambda data: self._handle_link_hit(data, ip_address, user_agent),
        )

    def _handle_link_hit(
        self,
        payload: Mapping[str, Any],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> WebhookResult:
        mobile = _text(payload, "mobile")
        message_id = _text(payload, "message_id")
        install_hint = _text(payload, "installId")
        entry = self._correlate(message_id, mobile, install_hint, require_tracked_link=True)

        install_id = entry.install_id if entry else install_hint
        if install_id is None:
            get_collector().increment(WEBHOOK_LINKHIT, labels={"matched": "false"})
            logger.warning(
                "webhook.linkhit_unattributed",
                mobile=mobile,
                payload=dict(payload),
            )
            self._keep_unmatched("linkhit", payload)
            return WebhookResult(success=False, error="Unable to attribute link hit to an install")

        clicked_at = parse_timestamp(payload.get("datetime")) or self.clock()
        short_url = (
            entry.tracked_link_short_url if entry and entry.tracked_link_short_url
            else extract_short_url(_text(payload, "message"))
        )
        device = parse_user_agent(user_agent)
        count = _hit_count(payload.get("link_hits"))

        hits = []
        for _ in range(count):
            hit = LinkHit(
                install_id=install_id,
                sms_log_id=entry.id if entry else None,
                contact_id=entry.contact_id if entry else _text(payload, "contactId"),
                email_address=entry.email_address if entry else _text(payload, "emailAddress"),
                mobile_number=mobile or "",
                short_url=short_url,
                original_url=entry.tracked_link_original_url if entry else None,
                clicked_at=clicked_at,
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=device.device_type,
                browser=device.browser,
                os=device.os,
                processed=False,
                webhook_data=dict(payload),
            )
            self.db.add(hit)
            hits.append(hit)
        self.db.flush()

        get_collector().increment(
            WEBHOOK_LINKHIT, value=count, labels={"matched": "true" if entry else "false"}
        )
        logger.info(
            "webhook.linkhit_saved",
            mobile=mobile,
            short_url=short_url,
            hit_count=count,
            linked=entry is not None,
        )
        return WebhookResult(
            success=True,
            matched=entry is not None,
            sms_log_id=entry.id if entry else None,
            event_ids=tuple(hit.id for hit in hits),
        )

    # -------------------------------------------------------------------------
    # Correlation
    # -------------------------------------------------------------------------

    def _correlate(
        self,
        message_id: Optional[str],
        mobile: Optional[str],
        install_hint: Optional[str] = None,
        require_tracked_link: bool = False,
    ) -> Optional[SmsLog]:
        """Find the send an inbound event belongs to.

        A message id match from another tenant than the hinted one is
        discarded and the mobile fallback runs within the hinted tenant.
        """
        entry = self.audit.get_by_message_id(message_id)
        if entry is not None and install_hint and entry.install_id != install_hint:
            logger.warning(
                "webhook.install_mismatch",
                message_id=message_id,
                install_id=entry.install_id,
                install_hint=install_hint,
            )
            entry = None
        if entry is None:
            entry = self.audit.latest_for_mobile(
                mobile,
                require_tracked_link=require_tracked_link,
                install_id=install_hint,
            )
        return entry

    def _keep_unmatched(self, event_type: str, payload: Mapping[str, Any]) -> UnmatchedWebhook:
        record = UnmatchedWebhook(
            event_type=event_type,
            install_id=_text(payload, "installId"),
            message_id=_text(payload, "message_id"),
            mobile_number=_text(payload, "mobile"),
            payload=dict(payload),
            received_at=self.clock(),
        )
        self.db.add(record)
        self.db.flush()
        return record


__all__ = [
    "DeviceInfo",
    "FINAL_STATUSES",
    "OPT_OUT_KEYWORDS",
    "ReconcilerService",
    "WebhookResult",
    "extract_short_url",
    "is_opt_out",
    "map_dlr_status",
    "parse_timestamp",
    "parse_user_agent",
]
