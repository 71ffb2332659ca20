"""Decision step API routes.

Provides endpoints for:
- POST /decision/create - Create a decision instance
- GET /decision/configure - Current configuration and pending decisions
- POST /decision/configure - Save configuration, push the record definition
- POST /decision/copy - Copy an instance
- POST /decision/delete - Delete an instance
- POST /decision/notify - Report which contacts replied
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from smsbridge_core.api.deps import DBSession, PlatformFactoryDep, tenant_platform
from smsbridge_core.api.schemas.action import InstanceCreatedResponse, NotifyRequest
from smsbridge_core.api.schemas.decision import (
    DecisionConfigureRequest,
    DecisionConfigureResponse,
    DecisionInstanceResponse,
    DecisionNotifyResponse,
)
from smsbridge_core.domain.models import DecisionInstance
from smsbridge_core.domain.services.decisions import (
    DECISION_RECORD_DEFINITION,
    DecisionService,
)
from smsbridge_core.domain.services.instances import (
    InstanceConfigurationError,
    InstanceNotFoundError,
    InstanceService,
)
from smsbridge_core.domain.services.tenants import TenantService
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.providers.eloqua.client import PlatformError

logger = get_logger(__name__)

router = APIRouter(prefix="/decision", tags=["decision"])


def get_instance_service(db: DBSession) -> InstanceService:
    """Get the instance service."""
    return InstanceService(db)


InstanceServiceDep = Annotated[InstanceService, Depends(get_instance_service)]


def _instance_response(db, decision: DecisionInstance) -> DecisionInstanceResponse:
    response = DecisionInstanceResponse.model_validate(decision)
    response.record_definition = dict(DECISION_RECORD_DEFINITION)
    response.pending_count = DecisionService(db).count_pending(decision.instance_id)
    return response


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/create", response_model=InstanceCreatedResponse)
async def create_decision(
    db: DBSession,
    instances: InstanceServiceDep,
    install_id: str = Query(..., alias="installId"),
    site_id: str = Query(..., alias="siteId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
):
    """Create an unconfigured decision instance."""
    if TenantService(db).get(install_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consumer not found")
    decision = instances.create_decision(
        install_id=install_id,
        site_id=site_id,
        instance_id=instance_id,
    )
    return InstanceCreatedResponse(instanceId=decision.instance_id)


@router.get("/configure", response_model=DecisionInstanceResponse)
async def get_decision_configuration(
    db: DBSession,
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Current configuration with the number of decisions still open."""
    try:
        decision = instances.require_decision(instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _instance_response(db, decision)


@router.post("/configure", response_model=DecisionConfigureResponse)
async def configure_decision(
    request: DecisionConfigureRequest,
    db: DBSession,
    instances: InstanceServiceDep,
    platform_factory: PlatformFactoryDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Save decision configuration.

    The record definition is pushed to the platform; a failed push is
    reported as a warning and the local save stands.
    """
    try:
        decision = instances.configure_decision(
            instance_id, **request.model_dump(exclude_unset=True)
        )
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InstanceConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    platform = tenant_platform(db, platform_factory, decision.install_id)
    if platform is not None:
        try:
            await platform.update_decision_instance(
                decision.instance_id,
                {
                    "recordDefinition": dict(DECISION_RECORD_DEFINITION),
                    "requiresConfiguration": decision.requires_configuration,
                },
            )
        except PlatformError as e:
            logger.error(
                "decision.record_definition_push_failed",
                instance_id=decision.instance_id,
                error=str(e),
            )
            return DecisionConfigureResponse(
                message="Configuration saved locally, but failed to update the platform",
                warning=e.message,
                requiresConfiguration=decision.requires_configuration,
            )

    return DecisionConfigureResponse(
        message="Configuration saved successfully",
        requiresConfiguration=decision.requires_configuration,
    )


@router.post("/copy", response_model=InstanceCreatedResponse)
async def copy_decision(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
    new_instance_id: Optional[str] = Query(None, alias="newInstanceId"),
):
    """Copy a decision instance."""
    try:
        copy = instances.copy_decision(instance_id, new_instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return InstanceCreatedResponse(
        instanceId=copy.instance_id,
        requiresConfiguration=copy.requires_configuration,
    )


@router.post("/delete")
async def delete_decision(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
) -> dict:
    """Delete a decision instance."""
    return {"success": instances.delete_decision(instance_id)}


# =============================================================================
# Evaluation
# =============================================================================


@router.post("/notify", response_model=DecisionNotifyResponse)
async def decision_notify(
    request: NotifyRequest,
    db: DBSession,
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Report, per contact, whether the last send was answered."""
    try:
        decision = instances.require_decision(instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    results = DecisionService(db).evaluate(decision, request.items)
    return DecisionNotifyResponse(results=[result.to_dict() for result in results])
