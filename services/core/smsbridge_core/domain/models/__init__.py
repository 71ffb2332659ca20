"""Domain models for SMS Bridge.

SQLAlchemy ORM models for tenants, configured campaign step instances,
the outbound SMS job queue, the per-SMS audit log and inbound events.

All timestamps are stored as naive UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as naive UTC, matching what the columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class JobStatus(str):
    """SMS job status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SmsStatus(str):
    """Audit entry delivery status values."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


class DecisionStatus(str):
    """Decision step outcome values."""

    PENDING = "pending"
    YES = "yes"
    NO = "no"


class FeederType(str):
    """Feeder instance event kinds."""

    INCOMING_SMS = "incoming_sms"
    LINK_HITS = "link_hits"


class CountrySetting(str):
    """Where an action instance reads the recipient country from."""

    CONTACT_COUNTRY = "contact_country"
    CUSTOM_FIELD = "custom_field"


class TextType(str):
    """Inbound message filter mode."""

    ANYTHING = "Anything"
    KEYWORD = "Keyword"


class ErrorKind(str):
    """Classification of a failed send attempt."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    STUCK = "stuck"
    INVALID_RECIPIENT = "invalid_recipient"
    AUTH_REJECTED = "auth_rejected"
    QUOTA_EXHAUSTED = "quota_exhausted"
    CLIENT_ERROR = "client_error"
    CONFIGURATION = "configuration"


# =============================================================================
# TENANTS
# =============================================================================


class Tenant(Base):
    """One install of the integration for a customer account."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    site_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Fernet-encrypted secrets
    gateway_api_key_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gateway_api_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    platform_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    default_country: Mapped[str] = mapped_column(
        String(64), nullable=False, default="Australia"
    )
    dlr_callback: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    reply_callback: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    link_hits_callback: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Per-action custom object mapping defaults, keyed by action name
    action_defaults: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    uninstalled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_tenant_site", "site_id"),)


# =============================================================================
# INSTANCES
# =============================================================================


class ActionInstance(Base):
    """A configured 'send SMS' step in a campaign."""

    __tablename__ = "action_instances"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    asset_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    caller_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    recipient_field: Mapped[str] = mapped_column(
        String(128), nullable=False, default="MobilePhone"
    )
    country_field: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    country_setting: Mapped[str] = mapped_column(
        Enum("contact_country", "custom_field", name="country_setting_enum"),
        nullable=False,
        default="contact_country",
    )
    program_coid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tracked_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    message_expiry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    message_validity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Downstream custom object mapping (platform field ids)
    custom_object_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mobile_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notification_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    outgoing_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    vn_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Optional following decision step
    decision_instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    decision_window_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    requires_configuration: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_action_install", "install_id"),)


class FeederInstance(Base):
    """A configured feeder step polled by the marketing platform."""

    __tablename__ = "feeder_instances"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    feeder_type: Mapped[str] = mapped_column(
        Enum("incoming_sms", "link_hits", name="feeder_type_enum"),
        nullable=False,
        default="incoming_sms",
    )
    sender_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    text_type: Mapped[str] = mapped_column(String(16), nullable=False, default="Anything")
    keyword: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    field_mappings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    records_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    requires_configuration: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_feeder_install", "install_id"),)


class DecisionInstance(Base):
    """A 'did they reply?' decision step following an action step."""

    __tablename__ = "decision_instances"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)

    evaluation_period: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    text_type: Mapped[str] = mapped_column(String(16), nullable=False, default="Anything")
    keyword: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    requires_configuration: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_decision_install", "install_id"),)


# =============================================================================
# QUEUE AND AUDIT
# =============================================================================


class SmsJob(Base):
    """One queued outbound SMS for one contact."""

    __tablename__ = "sms_jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mobile_number: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    campaign_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    send_options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    custom_object_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        Enum(
            "pending", "processing", "sent", "failed", "cancelled",
            name="sms_job_status_enum",
        ),
        nullable=False,
        default="pending",
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    lease_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    sms_log_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_sms_jobs_status", "status", "scheduled_at", "created_at"),
        Index("idx_sms_jobs_instance", "install_id", "instance_id"),
        Index("idx_sms_jobs_message", "message_id"),
    )


class SmsLog(Base):
    """Audit entry: the durable record of one dispatched SMS."""

    __tablename__ = "sms_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mobile_number: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    sender_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    campaign_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        Enum("pending", "sent", "delivered", "failed", "expired", name="sms_status_enum"),
        nullable=False,
        default="pending",
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tracked_link_short_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    tracked_link_original_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    decision_instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    decision_status: Mapped[Optional[str]] = mapped_column(
        Enum("pending", "yes", "no", name="decision_status_enum"),
        nullable=True,
    )
    decision_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    has_response: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    webhook_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_sms_logs_mobile", "mobile_number", "created_at"),
        Index("idx_sms_logs_instance", "install_id", "instance_id"),
        Index("idx_sms_logs_decision", "decision_status", "decision_deadline"),
    )


# =============================================================================
# INBOUND EVENTS
# =============================================================================


class SmsReply(Base):
    """Inbound SMS reply waiting to be handed back through a feeder."""

    __tablename__ = "sms_replies"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sms_log_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("sms_logs.id", ondelete="SET NULL"), nullable=True
    )
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    from_number: Mapped[str] = mapped_column(String(32), nullable=False)
    to_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    response_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    is_opt_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    webhook_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_replies_feed", "install_id", "processed", "received_at"),
        Index("idx_replies_from", "from_number"),
    )


class LinkHit(Base):
    """A click on a tracked link, waiting to be handed back through a feeder."""

    __tablename__ = "link_hits"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    install_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sms_log_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("sms_logs.id", ondelete="SET NULL"), nullable=True
    )
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    mobile_number: Mapped[str] = mapped_column(String(32), nullable=False)
    short_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    original_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    clicked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    device_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    browser: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    os: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    webhook_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_link_hits_feed", "install_id", "processed", "clicked_at"),
        Index("idx_link_hits_mobile", "mobile_number"),
    )


class UnmatchedWebhook(Base):
    """A gateway callback that could not be tied to a send or an install."""

    __tablename__ = "unmatched_webhooks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    install_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mobile_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_unmatched_webhooks_message", "message_id"),
        Index("idx_unmatched_webhooks_received", "received_at"),
    )
