"""Reply decision service.

Sends that feed a "did they reply?" decision step start with
decision_status = pending and a deadline. A qualifying reply flips
them to yes (see the reconciler); this service resolves the rest to no
once their deadline has passed.

It also answers the decision step's notify call: for each contact in
the batch, was the most recent send within the evaluation period
answered by a qualifying reply?
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from smsbridge_core.domain.models import (
    DecisionInstance,
    DecisionStatus,
    SmsLog,
    SmsReply,
    TextType,
    utcnow,
)
from smsbridge_core.domain.services.phone import PhoneFormatError, format_phone_number
from smsbridge_core.domain.services.template import field_value
from smsbridge_core.observability.logging import get_logger

logger = get_logger(__name__)


DEFAULT_BATCH_SIZE = 100

DECISION_RECORD_DEFINITION = {
    "ContactID": "{{Contact.Id}}",
    "EmailAddress": "{{Contact.Field(C_EmailAddress)}}",
    "MobilePhone": "{{Contact.Field(C_MobilePhone)}}",
    "Country": "{{Contact.Field(C_Country)}}",
}


def reply_matches(decision: Optional[DecisionInstance], message: Optional[str]) -> bool:
    """Whether a reply qualifies for a decision's text filter.

    Keyword decisions match the keyword case-insensitively anywhere in
    the reply; every other decision accepts any reply.
    """
    if decision is None or decision.text_type != TextType.KEYWORD or not decision.keyword:
        return True
    return decision.keyword.strip().lower() in (message or "").lower()


@dataclass
class DecisionResult:
    """Reply outcome for one contact of a decision batch."""

    contact_id: Optional[str]
    has_reply: bool
    reply_message: Optional[str] = None
    reply_time: Optional[datetime] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"contactId": self.contact_id, "hasReply": self.has_reply}
        if self.has_reply:
            result["replyMessage"] = self.reply_message
            result["replyTime"] = self.reply_time.isoformat() if self.reply_time else None
        else:
            result["reason"] = self.reason
        return result


class DecisionService:
    """Service for reply decisions."""

    def __init__(self, db: Session):
        self.db = db

    def expire_pending(
        self,
        now: Optional[datetime] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> int:
        """Resolve overdue pending decisions to no.

        Works in batches; each update re-checks the pending status so a
        reply that lands concurrently keeps its yes.

        Returns:
            Number of audit entries resolved.
        """
        now = now or utcnow()
        total = 0

        while True:
            ids = [
                row.id
                for row in (
                    self.db.query(SmsLog.id)
                    .filter(
                        SmsLog.decision_status == DecisionStatus.PENDING,
                        SmsLog.decision_deadline < now,
                    )
                    .order_by(SmsLog.decision_deadline.asc())
                    .limit(batch_size)
                    .all()
                )
            ]
            if not ids:
                break

            updated = (
                self.db.query(SmsLog)
                .filter(
                    SmsLog.id.in_(ids),
                    SmsLog.decision_status == DecisionStatus.PENDING,
                )
                .update(
                    {SmsLog.decision_status: DecisionStatus.NO, SmsLog.updated_at: now},
                    synchronize_session=False,
                )
            )
            self.db.flush()
            total += updated

            if len(ids) < batch_size:
                break

        if total:
            logger.info("decisions.expired", count=total)
        return total

    def count_pending(self, decision_instance_id: Optional[str] = None) -> int:
        query = self.db.query(SmsLog).filter(SmsLog.decision_status == DecisionStatus.PENDING)
        if decision_instance_id:
            query = query.filter(SmsLog.decision_instance_id == decision_instance_id)
        return query.count()

    def evaluate(
        self,
        decision: DecisionInstance,
        records: Sequence[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> list[DecisionResult]:
        """Check each record for a qualifying reply.

        The send is the tenant's most recent one to the contact (by
        contact id, else by mobile number) within the evaluation period;
        only replies linked to that send count.
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=decision.evaluation_period or 1)
        results = []

        for record in records:
            contact_id = field_value(record, "ContactID")
            mobile = field_value(record, "MobilePhone")
            if contact_id is None and mobile is None:
                results.append(DecisionResult(contact_id, False, reason="No mobile number"))
                continue

            entry = self._latest_send(decision.install_id, contact_id, mobile, record, cutoff)
            if entry is None:
                results.append(
                    DecisionResult(contact_id, False, reason="No SMS sent in evaluation period")
                )
                continue

            reply = self._qualifying_reply(decision, entry, cutoff)
            if reply is None:
                reason = (
                    "No matching keyword reply found"
                    if decision.text_type == TextType.KEYWORD
                    else "No reply found"
                )
                results.append(DecisionResult(contact_id, False, reason=reason))
                continue

            results.append(
                DecisionResult(
                    contact_id,
                    True,
                    reply_message=reply.message,
                    reply_time=reply.received_at,
                )
            )

        logger.info(
            "decisions.evaluated",
            instance_id=decision.instance_id,
            records=len(records),
            replied=sum(1 for result in results if result.has_reply),
        )
        return results

    def _latest_send(
        self,
        install_id: str,
        contact_id: Optional[str],
        mobile: Optional[str],
        record: Mapping[str, Any],
        cutoff: datetime,
    ) -> Optional[SmsLog]:
        query = self.db.query(SmsLog).filter(
            SmsLog.install_id == install_id,
            SmsLog.created_at >= cutoff,
        )
        if contact_id is not None:
            query = query.filter(SmsLog.contact_id == contact_id)
        else:
            query = query.filter(SmsLog.mobile_number.in_(_mobile_candidates(mobile, record)))
        return query.order_by(SmsLog.created_at.desc(), SmsLog.id.desc()).first()

    def _qualifying_reply(
        self,
        decision: DecisionInstance,
        entry: SmsLog,
        cutoff: datetime,
    ) -> Optional[SmsReply]:
        replies = (
            self.db.query(SmsReply)
            .filter(
                SmsReply.sms_log_id == entry.id,
                SmsReply.received_at >= cutoff,
            )
            .order_by(SmsReply.received_at.desc(), SmsReply.id.desc())
            .all()
        )
        for reply in replies:
            if reply_matches(decision, reply.message):
                return reply
        return None


def _mobile_candidates(mobile: str, record: Mapping[str, Any]) -> set[str]:
    candidates = {mobile}
    try:
        candidates.add(format_phone_number(mobile, field_value(record, "Country") or "Australia"))
    except PhoneFormatError:
        pass
    stripped = {value.lstrip("+") for value in candidates}
    return candidates | stripped | {f"+{value}" for value in stripped}


__all__ = [
    "DECISION_RECORD_DEFINITION",
    "DecisionResult",
    "DecisionService",
    "reply_matches",
]
