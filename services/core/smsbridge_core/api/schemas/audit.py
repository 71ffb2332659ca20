"""Audit log schemas for request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class AuditEntryResponse(BaseModel):
    """Response body for an audit entry."""

    id: int
    install_id: str
    instance_id: str
    job_id: Optional[str] = None
    contact_id: Optional[str] = None
    email_address: Optional[str] = None
    mobile_number: str
    message: str
    message_id: Optional[str] = None
    sender_id: Optional[str] = None
    status: str
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    tracked_link_short_url: Optional[str] = None
    has_response: bool
    decision_status: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditListResponse(BaseModel):
    """Response body for listing audit entries."""

    entries: list[AuditEntryResponse]
    counts: dict[str, int]
    limit: int
    next_cursor: Optional[str] = None
