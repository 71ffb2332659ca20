"""Action step API routes.

Provides endpoints for:
- POST /action/create - Create an action instance
- POST /action/configure - Save configuration and push the record definition
- POST /action/copy - Copy an instance
- POST /action/delete - Delete an instance
- POST /action/notify - Accept a contact batch and enqueue SMS jobs
- GET /action/sender-ids - List the tenant's gateway sender ids
- GET /action/jobs - Recent jobs, newest first
- GET /action/jobs/stats - Job counts by status
- POST /action/jobs/{job_id}/cancel - Cancel a pending job
"""

import asyncio
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from smsbridge_core.api.deps import (
    DBSession,
    GatewayFactoryDep,
    PlatformFactoryDep,
    tenant_platform,
)
from smsbridge_core.api.schemas.action import (
    ActionConfigureRequest,
    ActionInstanceResponse,
    InstanceCreatedResponse,
    JobCancelResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    NotifyRequest,
    NotifyResponse,
    RecordResultResponse,
    SenderIdsResponse,
)
from smsbridge_core.config import get_settings
from smsbridge_core.domain.services.dispatch import DispatchService
from smsbridge_core.domain.services.instances import (
    InstanceConfigurationError,
    InstanceNotFoundError,
    InstanceService,
)
from smsbridge_core.domain.services.jobs import (
    InvalidJobTransitionError,
    JobNotFoundError,
    JobService,
)
from smsbridge_core.domain.services.template import get_template_compiler
from smsbridge_core.domain.services.tenants import (
    MissingCredentialsError,
    TenantNotFoundError,
    TenantService,
)
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.providers.eloqua.client import PlatformError

logger = get_logger(__name__)

router = APIRouter(prefix="/action", tags=["action"])


def get_instance_service(db: DBSession) -> InstanceService:
    """Get the instance service."""
    return InstanceService(db)


InstanceServiceDep = Annotated[InstanceService, Depends(get_instance_service)]


def _instance_response(instance) -> ActionInstanceResponse:
    response = ActionInstanceResponse.model_validate(instance)
    if instance.template:
        response.record_definition = get_template_compiler().compile(instance).record_definition
    return response


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/create", response_model=InstanceCreatedResponse)
async def create_action(
    db: DBSession,
    instances: InstanceServiceDep,
    install_id: str = Query(..., alias="installId"),
    site_id: str = Query(..., alias="siteId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
    asset_id: Optional[str] = Query(None, alias="assetId"),
):
    """Create an unconfigured action instance for an installed tenant."""
    if TenantService(db).get(install_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consumer not found")

    instance = instances.create_action(
        install_id=install_id,
        site_id=site_id,
        instance_id=instance_id,
        asset_id=asset_id,
    )
    logger.info("action.created", install_id=install_id, instance_id=instance.instance_id)
    return InstanceCreatedResponse(instanceId=instance.instance_id)


@router.get("/configure", response_model=ActionInstanceResponse)
async def get_action_configuration(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Current configuration and compiled record definition."""
    try:
        instance = instances.require_action(instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _instance_response(instance)


@router.post("/configure", response_model=ActionInstanceResponse)
async def configure_action(
    request: ActionConfigureRequest,
    db: DBSession,
    instances: InstanceServiceDep,
    platform_factory: PlatformFactoryDep,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Save action configuration.

    The compiled record definition is pushed to the platform; a failed
    push is logged and the local save stands.
    """
    try:
        instance = instances.configure_action(
            instance_id, **request.model_dump(exclude_unset=True)
        )
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InstanceConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    response = _instance_response(instance)

    platform = tenant_platform(db, platform_factory, instance.install_id)
    if platform is not None:
        try:
            await platform.update_action_instance(
                instance.instance_id,
                {
                    "recordDefinition": response.record_definition,
                    "requiresConfiguration": instance.requires_configuration,
                },
            )
        except PlatformError as e:
            logger.error(
                "action.record_definition_push_failed",
                instance_id=instance.instance_id,
                error=str(e),
            )

    return response


@router.post("/copy", response_model=InstanceCreatedResponse)
async def copy_action(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
    new_instance_id: Optional[str] = Query(None, alias="newInstanceId"),
):
    """Copy an action instance with fresh statistics."""
    try:
        copy = instances.copy_action(instance_id, new_instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return InstanceCreatedResponse(
        instanceId=copy.instance_id,
        requiresConfiguration=copy.requires_configuration,
    )


@router.post("/delete")
async def delete_action(
    instances: InstanceServiceDep,
    instance_id: str = Query(..., alias="instanceId"),
) -> dict:
    """Delete an action instance."""
    deleted = instances.delete_action(instance_id)
    return {"success": deleted}


# =============================================================================
# Dispatch
# =============================================================================


@router.post("/notify", response_model=NotifyResponse)
async def notify(
    request: NotifyRequest,
    db: DBSession,
    instance_id: str = Query(..., alias="instanceId"),
):
    """Accept a platform batch and enqueue one job per record.

    Responds once the batch is enqueued, after the configured
    acknowledgement delay.
    """
    service = DispatchService(db)
    try:
        batch = service.accept_batch(instance_id, request.items, request.execution_id)
    except (InstanceNotFoundError, TenantNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (MissingCredentialsError, InstanceConfigurationError) as e:
        logger.error("action.notify_rejected", instance_id=instance_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    db.commit()

    delay = get_settings().notify_ack_delay_seconds
    if delay > 0:
        await asyncio.sleep(delay)

    return NotifyResponse(
        message=f"Queued {batch.accepted} of {len(batch.results)} records",
        results=[RecordResultResponse(**r.to_dict()) for r in batch.results],
    )


@router.get("/sender-ids", response_model=SenderIdsResponse)
async def list_sender_ids(
    db: DBSession,
    gateway_factory: GatewayFactoryDep,
    install_id: str = Query(..., alias="installId"),
):
    """Sender ids available on the tenant's gateway account."""
    tenants = TenantService(db)
    try:
        credentials = tenants.get_gateway_credentials(tenants.require(install_id))
    except TenantNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except MissingCredentialsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    sender_ids = await gateway_factory(credentials).get_sender_ids()
    return SenderIdsResponse(
        virtual_numbers=sender_ids.virtual_numbers,
        business_names=sender_ids.business_names,
        mobile_numbers=sender_ids.mobile_numbers,
    )


# =============================================================================
# Jobs
# =============================================================================


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    db: DBSession,
    install_id: str = Query(..., alias="installId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
    job_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
):
    """Recent jobs for a tenant, newest first."""
    jobs = JobService(db).list_jobs(
        install_id=install_id,
        instance_id=instance_id,
        status=job_status,
        limit=limit,
    )
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        count=len(jobs),
    )


@router.get("/jobs/stats", response_model=JobStatsResponse)
async def job_stats(
    db: DBSession,
    install_id: str = Query(..., alias="installId"),
    instance_id: Optional[str] = Query(None, alias="instanceId"),
):
    """Job counts by status; pending + processing is work in flight."""
    counts = JobService(db).stats(install_id=install_id, instance_id=instance_id)
    return JobStatsResponse(install_id=install_id, instance_id=instance_id, **counts)


@router.post("/jobs/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(job_id: str, db: DBSession):
    """Cancel a pending job."""
    try:
        job = JobService(db).cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return JobCancelResponse(job_id=job.job_id, status=job.status)
