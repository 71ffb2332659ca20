"""Install and tenant settings schemas."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class InstallResponse(BaseModel):
    success: bool = True
    installId: str


class TenantSettingsRequest(BaseModel):
    """Operator settings; credentials are write-only."""

    site_name: Optional[str] = None
    default_country: Optional[str] = None
    dlr_callback: Optional[str] = None
    reply_callback: Optional[str] = None
    link_hits_callback: Optional[str] = None
    action_defaults: Optional[dict[str, Any]] = None
    gateway_api_key: Optional[str] = Field(default=None, min_length=1)
    gateway_api_secret: Optional[str] = Field(default=None, min_length=1)
    platform_token: Optional[str] = None


class TenantSettingsResponse(BaseModel):
    install_id: str
    site_id: str
    site_name: Optional[str] = None
    default_country: str
    callbacks: dict[str, str]
    gateway_configured: bool
    platform_connected: bool
    gateway_valid: Optional[bool] = None


class BalanceResponse(BaseModel):
    balance: float
    currency: Optional[str] = None
