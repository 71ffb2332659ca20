"""SMS audit log service.

One entry per dispatched SMS, created when its job becomes sent.
Entries are append-only from the dispatch side; afterwards only the
event reconciler (delivery status, replies) and decision expiry
touch them. They are never deleted.
"""

import base64
import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from smsbridge_core.domain.models import DecisionStatus, SmsJob, SmsLog, SmsStatus, utcnow


class AuditService:
    """Service for SMS audit log operations."""

    def __init__(self, db: DBSession):
        """Initialize the audit service.

        Args:
            db: SQLAlchemy database session.
        """
        self.db = db

    def record_sent(
        self,
        job: SmsJob,
        message_id: str,
        gateway_response: Optional[dict[str, Any]] = None,
        tracked_link_short_url: Optional[str] = None,
        tracked_link_original_url: Optional[str] = None,
        decision_instance_id: Optional[str] = None,
        decision_deadline: Optional[datetime] = None,
        sent_at: Optional[datetime] = None,
    ) -> SmsLog:
        """Append the audit entry for a job that was just sent.

        Args:
            job: The sent job.
            message_id: Gateway message id.
            gateway_response: Raw gateway response body.
            tracked_link_short_url: Short URL the gateway substituted.
            tracked_link_original_url: URL the short link points to.
            decision_instance_id: Following decision step, if any.
            decision_deadline: When a pending decision resolves to "no".
            sent_at: Send time (defaults to the job's sent_at or now).

        Returns:
            The created SmsLog entry.
        """
        entry = SmsLog(
            install_id=job.install_id,
            instance_id=job.instance_id,
            job_id=job.job_id,
            contact_id=job.contact_id,
            email_address=job.email_address,
            mobile_number=job.mobile_number,
            message=job.message,
            message_id=str(message_id),
            sender_id=job.sender_id,
            campaign_title=job.campaign_title,
            status=SmsStatus.SENT,
            sent_at=sent_at or job.sent_at or utcnow(),
            tracked_link_short_url=tracked_link_short_url,
            tracked_link_original_url=tracked_link_original_url,
            decision_instance_id=decision_instance_id,
            decision_status=DecisionStatus.PENDING if decision_deadline else None,
            decision_deadline=decision_deadline,
            gateway_response=gateway_response,
        )

        self.db.add(entry)
        self.db.flush()

        return entry

    def get(self, entry_id: int) -> Optional[SmsLog]:
        return self.db.query(SmsLog).filter(SmsLog.id == entry_id).first()

    def get_by_message_id(self, message_id: Optional[str]) -> Optional[SmsLog]:
        if not message_id:
            return None
        return self.db.query(SmsLog).filter(SmsLog.message_id == str(message_id)).first()

    def latest_for_mobile(
        self,
        mobile_number: Optional[str],
        require_tracked_link: bool = False,
        install_id: Optional[str] = None,
    ) -> Optional[SmsLog]:
        """Most recent entry sent to a number.

        Used as the fallback correlation when a webhook carries no
        usable message id.
        """
        if not mobile_number:
            return None

        candidates = {str(mobile_number)}
        stripped = str(mobile_number).lstrip("+")
        candidates.update({stripped, f"+{stripped}"})

        query = self.db.query(SmsLog).filter(SmsLog.mobile_number.in_(candidates))
        if require_tracked_link:
            query = query.filter(SmsLog.tracked_link_short_url.is_not(None))
        if install_id:
            query = query.filter(SmsLog.install_id == install_id)

        return query.order_by(SmsLog.created_at.desc(), SmsLog.id.desc()).first()

    def list_entries(
        self,
        install_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        status: Optional[str] = None,
        mobile_number: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> tuple[list[SmsLog], Optional[str]]:
        """List audit entries, newest first, with cursor pagination.

        Args:
            install_id: Filter by tenant.
            instance_id: Filter by action instance.
            status: Filter by delivery status.
            mobile_number: Filter by recipient.
            limit: Maximum number of entries to return.
            cursor: Cursor from a previous page.

        Returns:
            Tuple of (entries, next cursor or None).
        """
        query = self._filtered(install_id, instance_id, status, mobile_number)

        if cursor:
            cursor_data = self._decode_cursor(cursor)
            if cursor_data:
                cursor_ts, cursor_id = cursor_data
                query = query.filter(
                    (SmsLog.created_at < cursor_ts) |
                    ((SmsLog.created_at == cursor_ts) & (SmsLog.id < cursor_id))
                )

        query = query.order_by(SmsLog.created_at.desc(), SmsLog.id.desc())

        # One extra row tells us whether another page exists
        entries = query.limit(limit + 1).all()
        has_more = len(entries) > limit
        if has_more:
            entries = entries[:limit]

        next_cursor = None
        if has_more and entries:
            last_entry = entries[-1]
            next_cursor = self._encode_cursor(last_entry.created_at, last_entry.id)

        return entries, next_cursor

    def count_by_status(
        self,
        install_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> dict[str, int]:
        """Count entries per delivery status."""
        query = self.db.query(SmsLog.status, func.count(SmsLog.id))
        if install_id:
            query = query.filter(SmsLog.install_id == install_id)
        if instance_id:
            query = query.filter(SmsLog.instance_id == instance_id)

        counts = {
            status: 0
            for status in (
                SmsStatus.PENDING,
                SmsStatus.SENT,
                SmsStatus.DELIVERED,
                SmsStatus.FAILED,
                SmsStatus.EXPIRED,
            )
        }
        for status, count in query.group_by(SmsLog.status).all():
            counts[status] = count
        return counts

    def _filtered(
        self,
        install_id: Optional[str],
        instance_id: Optional[str],
        status: Optional[str],
        mobile_number: Optional[str],
    ):
        query = self.db.query(SmsLog)
        if install_id:
            query = query.filter(SmsLog.install_id == install_id)
        if instance_id:
            query = query.filter(SmsLog.instance_id == instance_id)
        if status:
            query = query.filter(SmsLog.status == status)
        if mobile_number:
            query = query.filter(SmsLog.mobile_number == mobile_number)
        return query

    def _encode_cursor(self, ts: datetime, id: int) -> str:
        """Encode a cursor from timestamp and ID."""
        cursor_data = {"ts": ts.isoformat(), "id": id}
        return base64.urlsafe_b64encode(json.dumps(cursor_data).encode()).decode()

    def _decode_cursor(self, cursor: str) -> Optional[tuple[datetime, int]]:
        """Decode a cursor string, None if it is malformed."""
        try:
            cursor_data = json.loads(base64.urlsafe_b64decode(cursor.encode()).decode())
            ts = datetime.fromisoformat(cursor_data["ts"])
            if ts.tzinfo is not None:
                ts = ts.replace(tzinfo=None)
            return ts, int(cursor_data["id"])
        except (ValueError, KeyError, TypeError):
            return None
