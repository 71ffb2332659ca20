"""Gateway webhook routes.

Delivery receipts, replies and link hits. Parameters may arrive in the
query string (GET callbacks), a form body or a JSON body. Every request
is answered 200 so the gateway never retries; failures are reported in
the body and logged.
"""

from fastapi import APIRouter, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smsbridge_core.api.deps import DBSession, Payload
from smsbridge_core.api.schemas.webhooks import WebhookResponse
from smsbridge_core.domain.services.reconciler import ReconcilerService, WebhookResult
from smsbridge_core.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def commit_result(db: Session, event: str, result: WebhookResult) -> WebhookResponse:
    """Commit the handler's writes before answering the gateway."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"webhook.{event}_commit_failed", exc_info=True)
        return WebhookResponse(success=False, error=str(e))
    return WebhookResponse(**result.to_dict())


@router.api_route("/dlr", methods=["GET", "POST"], response_model=WebhookResponse)
async def delivery_receipt(payload: Payload, db: DBSession):
    """Apply a delivery receipt to the matching sent message."""
    result = ReconcilerService(db).handle_dlr(payload)
    return commit_result(db, "dlr", result)


@router.api_route("/reply", methods=["GET", "POST"], response_model=WebhookResponse)
async def reply(payload: Payload, db: DBSession):
    """Store an inbound reply."""
    result = ReconcilerService(db).handle_reply(payload)
    return commit_result(db, "reply", result)


@router.api_route("/linkhit", methods=["GET", "POST"], response_model=WebhookResponse)
async def link_hit(request: Request, payload: Payload, db: DBSession):
    """Store tracked-link clicks."""
    result = ReconcilerService(db).handle_link_hit(
        payload,
        ip_address=request.client.host if request.client else None,
        user_agent=payload.get("user_agent") or request.headers.get("user-agent"),
    )
    return commit_result(db, "linkhit", result)
