"""Audit log API routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from smsbridge_core.api.deps import DBSession
from smsbridge_core.api.schemas.audit import AuditEntryResponse, AuditListResponse
from smsbridge_core.domain.services.audit import AuditService

router = APIRouter(prefix="/audit", tags=["audit"])


def get_audit_service(db: DBSession) -> AuditService:
    """Get the audit service."""
    return AuditService(db)


AuditServiceDep = Annotated[AuditService, Depends(get_audit_service)]


@router.get("", response_model=AuditListResponse)
async def list_audit_entries(
    audit_service: AuditServiceDep,
    install_id: str = Query(..., alias="installId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
    status: Optional[str] = Query(None, description="Filter by delivery status"),
    mobile: Optional[str] = Query(None, description="Filter by recipient"),
    limit: int = Query(50, ge=1, le=200, description="Number of entries to return"),
    cursor: Optional[str] = Query(None, description="Cursor for pagination"),
):
    """List sent messages for a tenant, newest first.

    Use cursor-based pagination for large result sets.
    """
    entries, next_cursor = audit_service.list_entries(
        install_id=install_id,
        instance_id=instance_id,
        status=status,
        mobile_number=mobile,
        limit=limit,
        cursor=cursor,
    )

    return AuditListResponse(
        entries=[AuditEntryResponse.model_validate(e) for e in entries],
        counts=audit_service.count_by_status(install_id=install_id, instance_id=instance_id),
        limit=limit,
        next_cursor=next_cursor,
    )
