"""Feeder drain service.

Hands queued inbound events (replies, link hits) back to the marketing
platform when it polls a feeder instance. Each event is projected into a
row through the instance's field mappings and marked processed with a
conditional UPDATE in the same transaction as the read.

Delivery is at-least-once: rows are returned only after their marks are
flushed, and the caller commits after building the response. A crash
between the two leaves the events unprocessed, so they are re-delivered
on the next poll. Each row carries a stable `_idempotency_key` so the
platform side can drop duplicates.

Usage:
    service = FeederService(db=session)
    page = service.drain(instance_id, max_rows=100)
    session.commit()
    {"count": page.count, "items": page.items}
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from smsbridge_core.domain.models import (
    FeederInstance,
    FeederType,
    LinkHit,
    SmsReply,
    TextType,
    utcnow,
)
from smsbridge_core.domain.services.instances import InstanceNotFoundError, InstanceService
from smsbridge_core.observability.logging import SmsContext, get_logger
from smsbridge_core.observability.metrics import FEEDER_ROWS, get_collector

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================


DEFAULT_MAX_ROWS = 100
MAX_ROWS_LIMIT = 1000

IDEMPOTENCY_KEY = "_idempotency_key"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class FeederPage:
    """Rows returned by one drain call."""

    instance_id: str
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "items": self.items}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# SOURCES
# =============================================================================


class FeederSource(ABC):
    """One kind of inbound event a feeder can drain.

    Subclasses pick the model, its filters and ordering, and project an
    event into the attribute map that field mappings select from.
    """

    model: Any
    ordering: Any

    def __init__(self, db: Session, instance: FeederInstance):
        self.db = db
        self.instance = instance

    def query(self) -> Query:
        query = self.db.query(self.model).filter(
            self.model.install_id == self.instance.install_id,
            self.model.processed.is_(False),
        )
        return self.filter(query).order_by(self.ordering.asc(), self.model.id.asc())

    def filter(self, query: Query) -> Query:
        return query

    def mark_processed(self, event: Any, now: datetime) -> bool:
        """Conditionally flip processed; False if someone else got there first."""
        updated = (
            self.db.query(self.model)
            .filter(self.model.id == event.id, self.model.processed.is_(False))
            .update(
                {self.model.processed: True, self.model.processed_at: now},
                synchronize_session=False,
            )
        )
        self.db.flush()
        return bool(updated)

    def row(self, event: Any) -> dict[str, Any]:
        """Project an event through the instance's field mappings."""
        attributes = self.attributes(event)
        mappings = self.instance.field_mappings or {}
        row = {
            column: attributes[name]
            for name, column in mappings.items()
            if column and name in attributes
        }
        row[IDEMPOTENCY_KEY] = self.idempotency_key(event)
        return row

    @abstractmethod
    def attributes(self, event: Any) -> dict[str, Any]:
        pass

    @abstractmethod
    def idempotency_key(self, event: Any) -> str:
        pass


class ReplySource(FeederSource):
    """Inbound SMS replies, optionally filtered by number and keyword."""

    model = SmsReply
    ordering = SmsReply.received_at

    def filter(self, query: Query) -> Query:
        sender_ids = [str(s) for s in (self.instance.sender_ids or []) if s]
        if sender_ids:
            query = query.filter(SmsReply.to_number.in_(sender_ids))
        keyword = (self.instance.keyword or "").strip()
        if self.instance.text_type == TextType.KEYWORD and keyword:
            query = query.filter(
                func.lower(SmsReply.message).contains(keyword.lower(), autoescape=True)
            )
        return query

    def attributes(self, event: SmsReply) -> dict[str, Any]:
        return {
            "mobile": event.from_number,
            "email": event.email_address or "",
            "message": event.message,
            "timestamp": _iso(event.received_at),
            "messageId": event.message_id or event.response_id,
            "senderId": event.to_number,
            "contactId": event.contact_id,
            "optOut": event.is_opt_out,
        }

    def idempotency_key(self, event: SmsReply) -> str:
        return event.response_id or f"reply:{event.id}"


class LinkHitSource(FeederSource):
    """Tracked-link clicks."""

    model = LinkHit
    ordering = LinkHit.clicked_at

    def attributes(self, event: LinkHit) -> dict[str, Any]:
        return {
            "mobile": event.mobile_number,
            "email": event.email_address or "",
            "url": event.short_url,
            "originalUrl": event.original_url,
            "timestamp": _iso(event.clicked_at),
            "linkHits": 1,
            "contactId": event.contact_id,
            "deviceType": event.device_type,
            "browser": event.browser,
            "os": event.os,
        }

    def idempotency_key(self, event: LinkHit) -> str:
        return "|".join([
            event.mobile_number or "",
            _iso(event.clicked_at) or "",
            event.short_url or "",
        ])


SOURCES = {
    FeederType.INCOMING_SMS: ReplySource,
    FeederType.LINK_HITS: LinkHitSource,
}


# =============================================================================
# SERVICE
# =============================================================================


class FeederService:
    """Service for draining inbound events through feeder instances."""

    def __init__(self, db: Session):
        self.db = db
        self.instances = InstanceService(db)

    def source_for(self, instance: FeederInstance) -> FeederSource:
        source_cls = SOURCES.get(instance.feeder_type)
        if source_cls is None:
            raise ValueError(f"Unknown feeder type: {instance.feeder_type}")
        return source_cls(self.db, instance)

    def drain(
        self,
        instance_id: str,
        max_rows: Optional[int] = DEFAULT_MAX_ROWS,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> FeederPage:
        """Return and mark the next unprocessed events for a feeder.

        Args:
            instance_id: Feeder instance id.
            max_rows: Row limit (None for no limit, capped otherwise).
            offset: Rows to skip.
            now: Processing time (defaults to current UTC).

        Returns:
            FeederPage of projected rows in event-time order.

        Raises:
            InstanceNotFoundError: Unknown or deleted feeder.
        """
        instance = self.instances.get_feeder(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Feeder instance {instance_id} not found")

        now = now or utcnow()
        source = self.source_for(instance)

        query = source.query()
        if offset:
            query = query.offset(max(0, int(offset)))
        if max_rows is not None:
            query = query.limit(max(0, min(int(max_rows), MAX_ROWS_LIMIT)))

        page = FeederPage(instance_id=instance_id)
        for event in query.all():
            if not source.mark_processed(event, now):
                continue
            page.items.append(source.row(event))

        if page.items:
            self.instances.record_feeder_poll(instance_id, page.count, now)
            get_collector().increment(
                FEEDER_ROWS, page.count, labels={"type": instance.feeder_type}
            )

        logger.info(
            "feeder.drained",
            context=SmsContext(install_id=instance.install_id, instance_id=instance_id),
            feeder_type=instance.feeder_type,
            rows=page.count,
            offset=offset,
        )
        return page


__all__ = [
    "FeederPage",
    "FeederService",
    "FeederSource",
    "LinkHitSource",
    "ReplySource",
]
