"""Action step schemas for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class NotifyRequest(BaseModel):
    """Batch of contact records posted by the platform."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")
    execution_id: Optional[str] = Field(default=None, alias="executionId")


class RecordResultResponse(BaseModel):
    contactId: Optional[str] = None
    success: bool
    jobId: Optional[str] = None
    error: Optional[str] = None


class NotifyResponse(BaseModel):
    message: str
    results: list[RecordResultResponse] = Field(default_factory=list)


class InstanceCreatedResponse(BaseModel):
    success: bool = True
    instanceId: str
    requiresConfiguration: bool = True


class ActionConfigureRequest(BaseModel):
    """Action configuration as saved from the configuration page."""

    asset_id: Optional[str] = None
    asset_name: Optional[str] = None
    template: Optional[str] = None
    caller_id: Optional[str] = None
    recipient_field: Optional[str] = None
    country_field: Optional[str] = None
    country_setting: Optional[str] = None
    program_coid: Optional[str] = None
    tracked_link: Optional[str] = None
    message_expiry: Optional[bool] = None
    message_validity: Optional[int] = None
    custom_object_id: Optional[str] = None
    mobile_field: Optional[str] = None
    email_field: Optional[str] = None
    title_field: Optional[str] = None
    notification_field: Optional[str] = None
    outgoing_field: Optional[str] = None
    vn_field: Optional[str] = None
    decision_instance_id: Optional[str] = None
    decision_window_hours: Optional[int] = None


class ActionInstanceResponse(BaseModel):
    """Response body for an action instance."""

    instance_id: str
    install_id: str
    template: Optional[str] = None
    caller_id: Optional[str] = None
    recipient_field: str
    country_setting: str
    program_coid: Optional[str] = None
    tracked_link: Optional[str] = None
    message_expiry: bool
    message_validity: int
    custom_object_id: Optional[str] = None
    sent_count: int
    failed_count: int
    last_executed_at: Optional[datetime] = None
    requires_configuration: bool
    version: int
    record_definition: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class JobStatsResponse(BaseModel):
    install_id: str
    instance_id: Optional[str] = None
    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    in_flight: int = 0
    total: int = 0


class JobResponse(BaseModel):
    """One queued SMS job."""

    job_id: str
    instance_id: str
    contact_id: Optional[str] = None
    mobile_number: str
    status: str
    retry_count: int
    scheduled_at: datetime
    message_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class JobListResponse(BaseModel):
    jobs: list[JobResponse] = Field(default_factory=list)
    count: int = 0


class JobCancelResponse(BaseModel):
    job_id: str
    status: str


class SenderIdsResponse(BaseModel):
    virtual_numbers: list[str] = Field(default_factory=list)
    business_names: list[str] = Field(default_factory=list)
    mobile_numbers: list[str] = Field(default_factory=list)
