"""Webhook and feeder schemas for request/response validation."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Gateway callbacks always get a 200 with this body."""

    success: bool
    error: Optional[str] = None


class FeederNotifyResponse(BaseModel):
    count: int
    items: list[dict[str, Any]] = Field(default_factory=list)


class FeederConfigureRequest(BaseModel):
    """Feeder configuration as saved from the configuration page."""

    asset_id: Optional[str] = None
    feeder_type: Optional[str] = None
    sender_ids: Optional[list[str]] = None
    text_type: Optional[str] = None
    keyword: Optional[str] = None
    field_mappings: Optional[dict[str, str]] = None


class FeederInstanceResponse(BaseModel):
    instance_id: str
    install_id: str
    feeder_type: str
    sender_ids: list[str] = Field(default_factory=list)
    text_type: str
    keyword: Optional[str] = None
    field_mappings: dict[str, str] = Field(default_factory=dict)
    records_sent: int
    requires_configuration: bool

    model_config = {"from_attributes": True}
