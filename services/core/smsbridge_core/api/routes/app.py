"""Install lifecycle and tenant settings routes.

Provides endpoints for:
- POST /app/install - Register a tenant
- POST /app/uninstall - Deactivate a tenant
- GET|POST /app/settings - Read or save tenant settings and credentials
- GET /app/balance - Gateway account balance
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from smsbridge_core.api.deps import DBSession, GatewayFactoryDep
from smsbridge_core.api.schemas.app import (
    BalanceResponse,
    InstallResponse,
    TenantSettingsRequest,
    TenantSettingsResponse,
)
from smsbridge_core.domain.models import Tenant
from smsbridge_core.domain.services.tenants import (
    MissingCredentialsError,
    TenantNotFoundError,
    TenantService,
)
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.providers.base import GatewayError

logger = get_logger(__name__)

router = APIRouter(prefix="/app", tags=["app"])


def _settings_response(
    service: TenantService,
    tenant: Tenant,
    gateway_valid: Optional[bool] = None,
) -> TenantSettingsResponse:
    return TenantSettingsResponse(
        install_id=tenant.install_id,
        site_id=tenant.site_id,
        site_name=tenant.site_name,
        default_country=tenant.default_country,
        callbacks=service.callback_urls(tenant),
        gateway_configured=service.has_gateway_credentials(tenant),
        platform_connected=bool(tenant.platform_token_encrypted),
        gateway_valid=gateway_valid,
    )


@router.post("/install", response_model=InstallResponse)
async def install(
    db: DBSession,
    install_id: str = Query(..., alias="installId"),
    site_id: str = Query(..., alias="siteId"),
    site_name: Optional[str] = Query(None, alias="siteName"),
):
    """Register (or re-register) a tenant."""
    tenant = TenantService(db).install(install_id, site_id, site_name)
    return InstallResponse(installId=tenant.install_id)


@router.post("/uninstall")
async def uninstall(
    db: DBSession,
    install_id: str = Query(..., alias="installId"),
) -> dict:
    """Deactivate a tenant."""
    return {"success": TenantService(db).uninstall(install_id)}


@router.get("/settings", response_model=TenantSettingsResponse)
async def get_settings_page(
    db: DBSession,
    install_id: str = Query(..., alias="installId"),
):
    """Tenant settings (credentials are never returned)."""
    service = TenantService(db)
    try:
        tenant = service.require(install_id)
    except TenantNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _settings_response(service, tenant)


@router.post("/settings", response_model=TenantSettingsResponse)
async def save_settings(
    request: TenantSettingsRequest,
    db: DBSession,
    gateway_factory: GatewayFactoryDep,
    install_id: str = Query(..., alias="installId"),
):
    """Save tenant settings and, when given, gateway credentials.

    New credentials are saved even when the gateway rejects them; the
    response reports the check in gateway_valid.
    """
    service = TenantService(db)
    values = request.model_dump(exclude_unset=True)
    api_key = values.pop("gateway_api_key", None)
    api_secret = values.pop("gateway_api_secret", None)
    has_token = "platform_token" in values
    token = values.pop("platform_token", None)

    try:
        tenant = service.update_settings(install_id, **values)
        if api_key or api_secret:
            tenant = service.set_gateway_credentials(install_id, api_key, api_secret)
        if has_token:
            tenant = service.set_platform_token(install_id, token)
    except TenantNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (MissingCredentialsError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    gateway_valid = None
    if api_key or api_secret:
        gateway = gateway_factory(service.get_gateway_credentials(tenant))
        gateway_valid = await gateway.validate_credentials()
        if not gateway_valid:
            logger.warning("app.gateway_credentials_rejected", install_id=install_id)

    return _settings_response(service, tenant, gateway_valid)


@router.get("/balance", response_model=BalanceResponse)
async def gateway_balance(
    db: DBSession,
    gateway_factory: GatewayFactoryDep,
    install_id: str = Query(..., alias="installId"),
):
    """Credit balance on the tenant's gateway account."""
    service = TenantService(db)
    try:
        credentials = service.get_gateway_credentials(service.require(install_id))
    except TenantNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except MissingCredentialsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        balance = await gateway_factory(credentials).get_balance()
    except GatewayError as e:
        logger.warning("app.balance_failed", install_id=install_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return BalanceResponse(balance=balance.balance, currency=balance.currency)
