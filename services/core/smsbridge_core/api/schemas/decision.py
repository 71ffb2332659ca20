"""Decision step schemas for request/response validation."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class DecisionConfigureRequest(BaseModel):
    """Decision configuration as saved from the configuration page."""

    evaluation_period: Optional[int] = None
    text_type: Optional[str] = None
    keyword: Optional[str] = None


class DecisionInstanceResponse(BaseModel):
    instance_id: str
    install_id: str
    evaluation_period: int
    text_type: str
    keyword: Optional[str] = None
    requires_configuration: bool
    record_definition: dict[str, str] = Field(default_factory=dict)
    pending_count: int = 0

    model_config = {"from_attributes": True}


class DecisionConfigureResponse(BaseModel):
    success: bool = True
    message: str
    requiresConfiguration: bool
    warning: Optional[str] = None


class DecisionNotifyResponse(BaseModel):
    success: bool = True
    results: list[dict[str, Any]] = Field(default_factory=list)
