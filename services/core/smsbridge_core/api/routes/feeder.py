"""Feeder step API routes.

Provides endpoints for:
- POST /feeder/create - Create a feeder instance
- POST /feeder/configure - Save configuration, point watched numbers here
- POST /feeder/copy - Copy an instance
- POST /feeder/delete - Delete an instance
- GET|POST /feeder/notify - Drain unprocessed events as rows
- GET|POST /feeder/incomingsms - Store an SMS forwarded from a watched number
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from smsbridge_core.api.deps import (
    DBSession,
    GatewayFactoryDep,
    Payload,
    PlatformFactoryDep,
    tenant_platform,
)
from smsbridge_core.api.routes.webhooks import commit_result
from smsbridge_core.api.schemas.action import InstanceCreatedResponse
from smsbridge_core.api.schemas.webhooks import (
    FeederConfigureRequest,
    FeederInstanceResponse,
    FeederNotifyResponse,
    WebhookResponse,
)
from smsbridge_core.config import get_settings
from smsbridge_core.domain.models import FeederType
from smsbridge_core.domain.services.feeder import DEFAULT_MAX_ROWS, FeederService
from smsbridge_core.domain.services.instances import (
    InstanceConfigurationError,
    InstanceNotFoundError,
    InstanceService,
)
from smsbridge_core.domain.services.reconciler import ReconcilerService
from smsbridge_core.domain.services.tenants import MissingCredentialsError, TenantService
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.providers.base import GatewayError
from smsbridge_core.providers.eloqua.client import PlatformError

logger = get_logger(__name__)

router = APIRouter(prefix="/feeder", tags=["feeder"])


def get_instance_service(db: DBSession) -> InstanceService:
    """Get the instance service."""
    return InstanceService(db)


InstanceServiceDep = Annotated[InstanceService, Depends(get_instance_service)]


def _int_param(payload: dict, key: str, default: int) -> int:
    try:
        return int(payload.get(key, default))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{key} must be an integer",
        )


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/create", response_model=InstanceCreatedResponse)
async def create_feeder(
    db: DBSession,
    instances: InstanceServiceDep,
    install_id: str = Query(..., alias="installId"),
    site_id: str = Query(..., alias="siteId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
    asset_id: Optional[str] = Query(None, alias="assetId"),
    feeder_type: str = Query(FeederType.INCOMING_SMS, alias="type"),
):
    """Create an unconfigured feeder instance."""
    if TenantService(db).get(install_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consumer not found")
    try:
        feeder = instances.create_feeder(
            install_id=install_id,
            site_id=site_id,
            feeder_type=feeder_type,
            instance_id=instance_id,
            asset_id=asset_id,
        )
    except InstanceConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return InstanceCreatedResponse(instanceId=feeder.instance_id)


@router.post("/configure", response_model=FeederInstanceResponse)
async def configure_feeder(
    request: FeederConfigureRequest,
    db: DBSession,
    instances: InstanceServiceDep,
    gateway_factory: GatewayFactoryDep,
    platform_factory: PlatformFactoryDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Save feeder configuration.

    For incoming-SMS feeders each watched virtual number is pointed at
    /feeder/incomingsms; forwarding failures are logged per number. The
    platform is told whether the instance still needs configuring.
    """
    try:
        feeder = instances.configure_feeder(instance_id, **request.model_dump(exclude_unset=True))
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InstanceConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if feeder.feeder_type == FeederType.INCOMING_SMS and feeder.sender_ids:
        await _configure_forwarding(db, gateway_factory, feeder)

    platform = tenant_platform(db, platform_factory, feeder.install_id)
    if platform is not None:
        try:
            await platform.update_feeder_instance(
                feeder.instance_id,
                {"requiresConfiguration": feeder.requires_configuration},
            )
        except PlatformError as e:
            logger.error(
                "feeder.instance_update_failed",
                instance_id=feeder.instance_id,
                error=str(e),
            )

    return FeederInstanceResponse.model_validate(feeder)


async def _configure_forwarding(db, gateway_factory, feeder) -> None:
    tenants = TenantService(db)
    tenant = tenants.get(feeder.install_id)
    if tenant is None:
        return
    try:
        gateway = gateway_factory(tenants.get_gateway_credentials(tenant))
    except MissingCredentialsError:
        logger.warning("feeder.forwarding_skipped", instance_id=feeder.instance_id)
        return

    base_url = get_settings().base_url
    forward_url = (
        f"{base_url}/feeder/incomingsms"
        f"?instanceId={feeder.instance_id}&installId={feeder.install_id}"
    )
    for number in feeder.sender_ids:
        try:
            await gateway.configure_number_forwarding(number, forward_url)
        except GatewayError as e:
            logger.error(
                "feeder.forwarding_failed",
                instance_id=feeder.instance_id,
                number=number,
                error=str(e),
            )


@router.post("/copy", response_model=InstanceCreatedResponse)
async def copy_feeder(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
    new_instance_id: Optional[str] = Query(None, alias="newInstanceId"),
):
    """Copy a feeder instance with fresh statistics."""
    try:
        copy = instances.copy_feeder(instance_id, new_instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return InstanceCreatedResponse(
        instanceId=copy.instance_id,
        requiresConfiguration=copy.requires_configuration,
    )


@router.post("/delete")
async def delete_feeder(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
) -> dict:
    """Delete a feeder instance."""
    return {"success": instances.delete_feeder(instance_id)}


# =============================================================================
# Drain and ingest
# =============================================================================


@router.api_route("/notify", methods=["GET", "POST"], response_model=FeederNotifyResponse)
async def feeder_notify(payload: Payload, db: DBSession):
    """Return the next unprocessed events for a feeder as rows.

    Events are marked processed in the same transaction, committed once
    the response body is built.
    """
    instance_id = payload.get("instanceId")
    if not instance_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="instanceId is required")

    max_rows = _int_param(payload, "maxRows", DEFAULT_MAX_ROWS)
    offset = _int_param(payload, "offset", 0)

    try:
        page = FeederService(db).drain(instance_id, max_rows=max_rows, offset=offset)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    response = FeederNotifyResponse(**page.to_dict())
    db.commit()
    return response


@router.api_route("/incomingsms", methods=["GET", "POST"], response_model=WebhookResponse)
async def incoming_sms(payload: Payload, db: DBSession):
    """Store an SMS forwarded from a watched virtual number."""
    result = ReconcilerService(db).incoming_sms(
        instance_id=payload.get("instanceId"),
        install_id=payload.get("installId"),
        payload=payload,
    )
    return commit_result(db, "incoming_sms", result)
