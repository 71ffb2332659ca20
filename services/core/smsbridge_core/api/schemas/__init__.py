"""API schemas."""

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
from smsbridge_core.api.schemas.app import (
    BalanceResponse,
    InstallResponse,
    TenantSettingsRequest,
    TenantSettingsResponse,
)
from smsbridge_core.api.schemas.audit import (
    AuditEntryResponse,
    AuditListResponse,
)
from smsbridge_core.api.schemas.decision import (
    DecisionConfigureRequest,
    DecisionConfigureResponse,
    DecisionInstanceResponse,
    DecisionNotifyResponse,
)
from smsbridge_core.api.schemas.webhooks import (
    FeederConfigureRequest,
    FeederInstanceResponse,
    FeederNotifyResponse,
    WebhookResponse,
)

__all__ = [
    # Action schemas
    "ActionConfigureRequest",
    "ActionInstanceResponse",
    "InstanceCreatedResponse",
    "JobCancelResponse",
    "JobListResponse",
    "JobResponse",
    "JobStatsResponse",
    "NotifyRequest",
    "NotifyResponse",
    "RecordResultResponse",
    "SenderIdsResponse",
    # App schemas
    "BalanceResponse",
    "InstallResponse",
    "TenantSettingsRequest",
    "TenantSettingsResponse",
    # Audit schemas
    "AuditEntryResponse",
    "AuditListResponse",
    # Decision schemas
    "DecisionConfigureRequest",
    "DecisionConfigureResponse",
    "DecisionInstanceResponse",
    "DecisionNotifyResponse",
    # Webhook and feeder schemas
    "FeederConfigureRequest",
    "FeederInstanceResponse",
    "FeederNotifyResponse",
    "WebhookResponse",
]
