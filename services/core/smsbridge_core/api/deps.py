"""API dependencies for dependency injection."""

from typing import Annotated, Any, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from smsbridge_core.domain.services.dispatch import (
    GatewayFactory,
    PlatformFactory,
    default_gateway_factory,
    default_platform_factory,
)
from smsbridge_core.domain.services.tenants import TenantService
from smsbridge_core.infra.db import get_sync_session_factory
from smsbridge_core.providers.eloqua.client import EloquaClient


def get_db() -> Session:
    """Get a database session."""
    session_factory = get_sync_session_factory()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def merged_payload(request: Request) -> dict[str, Any]:
    """Query string, form body and JSON body merged into one dict.

    Later sources win. Malformed bodies are ignored; callers validate
    the fields they need.
    """
    payload: dict[str, Any] = dict(request.query_params)
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)
    elif (
        "application/x-www-form-urlencoded" in content_type
        or "multipart/form-data" in content_type
    ):
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})

    return payload


def get_gateway_factory() -> GatewayFactory:
    """Get the factory that builds a gateway client from tenant credentials."""
    return default_gateway_factory


def get_platform_factory() -> PlatformFactory:
    """Get the factory that builds a platform client for a tenant."""
    return default_platform_factory


def tenant_platform(
    db: Session,
    platform_factory: PlatformFactory,
    install_id: str,
) -> Optional[EloquaClient]:
    """Platform client for a tenant, or None without a tenant or token."""
    tenants = TenantService(db)
    tenant = tenants.get(install_id)
    if tenant is None:
        return None
    snapshot = tenants.snapshot(tenant)
    return platform_factory(snapshot, snapshot.platform_token)


# Type aliases for cleaner route signatures
DBSession = Annotated[Session, Depends(get_db)]
GatewayFactoryDep = Annotated[GatewayFactory, Depends(get_gateway_factory)]
PlatformFactoryDep = Annotated[PlatformFactory, Depends(get_platform_factory)]
Payload = Annotated[dict[str, Any], Depends(merged_payload)]
