"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates all tables for SMS Bridge:
- tenants
- action_instances
- feeder_instances
- decision_instances
- sms_jobs
- sms_logs
- sms_replies
- link_hits
- unmatched_webhooks
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Tenants table
    op.create_table(
        "tenants",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("install_id", sa.String(64), nullable=False, unique=True),
        sa.Column("site_id", sa.String(64), nullable=False),
        sa.Column("site_name", sa.String(255), nullable=True),
        sa.Column("gateway_api_key_encrypted", sa.Text, nullable=True),
        sa.Column("gateway_api_secret_encrypted", sa.Text, nullable=True),
        sa.Column("platform_token_encrypted", sa.Text, nullable=True),
        sa.Column("default_country", sa.String(64), nullable=False, server_default="Australia"),
        sa.Column("dlr_callback", sa.String(512), nullable=True),
        sa.Column("reply_callback", sa.String(512), nullable=True),
        sa.Column("link_hits_callback", sa.String(512), nullable=True),
        sa.Column("action_defaults", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("installed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("uninstalled_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_tenant_site", "tenants", ["site_id"])

    # Action instances table
    op.create_table(
        "action_instances",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.String(64), nullable=False, unique=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column("site_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(64), nullable=True),
        sa.Column("asset_name", sa.String(255), nullable=True),
        sa.Column("template", sa.Text, nullable=True),
        sa.Column("caller_id", sa.String(128), nullable=True),
        sa.Column("recipient_field", sa.String(128), nullable=False, server_default="MobilePhone"),
        sa.Column("country_field", sa.String(128), nullable=True),
        sa.Column(
            "country_setting",
            sa.Enum("contact_country", "custom_field", name="country_setting_enum"),
            nullable=False,
            server_default="contact_country",
        ),
        sa.Column("program_coid", sa.String(64), nullable=True),
        sa.Column("tracked_link", sa.Text, nullable=True),
        sa.Column("message_expiry", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("message_validity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("custom_object_id", sa.String(64), nullable=True),
        sa.Column("mobile_field", sa.String(64), nullable=True),
        sa.Column("email_field", sa.String(64), nullable=True),
        sa.Column("title_field", sa.String(64), nullable=True),
        sa.Column("notification_field", sa.String(64), nullable=True),
        sa.Column("outgoing_field", sa.String(64), nullable=True),
        sa.Column("vn_field", sa.String(64), nullable=True),
        sa.Column("decision_instance_id", sa.String(64), nullable=True),
        sa.Column("decision_window_hours", sa.Integer, nullable=True),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime, nullable=True),
        sa.Column("requires_configuration", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("idx_action_install", "action_instances", ["install_id"])

    # Feeder instances table
    op.create_table(
        "feeder_instances",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.String(64), nullable=False, unique=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column("site_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(64), nullable=True),
        sa.Column(
            "feeder_type",
            sa.Enum("incoming_sms", "link_hits", name="feeder_type_enum"),
            nullable=False,
            server_default="incoming_sms",
        ),
        sa.Column("sender_ids", sa.JSON, nullable=False),
        sa.Column("text_type", sa.String(16), nullable=False, server_default="Anything"),
        sa.Column("keyword", sa.String(255), nullable=True),
        sa.Column("field_mappings", sa.JSON, nullable=False),
        sa.Column("records_sent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_polled_at", sa.DateTime, nullable=True),
        sa.Column("requires_configuration", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("idx_feeder_install", "feeder_instances", ["install_id"])

    # Decision instances table
    op.create_table(
        "decision_instances",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("instance_id", sa.String(64), nullable=False, unique=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column("site_id", sa.String(64), nullable=False),
        sa.Column("evaluation_period", sa.Integer, nullable=False, server_default="24"),
        sa.Column("text_type", sa.String(16), nullable=False, server_default="Anything"),
        sa.Column("keyword", sa.String(255), nullable=True),
        sa.Column("requires_configuration", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("idx_decision_install", "decision_instances", ["install_id"])

    # SMS jobs table (outbound queue)
    op.create_table(
        "sms_jobs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(36), nullable=False, unique=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column("instance_id", sa.String(64), nullable=False),
        sa.Column("execution_id", sa.String(64), nullable=True),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("mobile_number", sa.String(32), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("sender_id", sa.String(128), nullable=True),
        sa.Column("campaign_title", sa.String(255), nullable=True),
        sa.Column("send_options", sa.JSON, nullable=False),
        sa.Column("custom_object_data", sa.JSON, nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "processing", "sent", "failed", "cancelled",
                name="sms_job_status_enum",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("scheduled_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("lease_started_at", sa.DateTime, nullable=True),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("message_id", sa.String(64), nullable=True),
        sa.Column("gateway_response", sa.JSON, nullable=True),
        sa.Column("sms_log_id", sa.BigInteger, nullable=True),
        sa.Column("sent_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_sms_jobs_status", "sms_jobs", ["status", "scheduled_at", "created_at"])
    op.create_index("idx_sms_jobs_instance", "sms_jobs", ["install_id", "instance_id"])
    op.create_index("idx_sms_jobs_message", "sms_jobs", ["message_id"])

    # SMS logs table (audit of every sent message)
    op.create_table(
        "sms_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column("instance_id", sa.String(64), nullable=False),
        sa.Column("job_id", sa.String(36), nullable=True),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("mobile_number", sa.String(32), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("message_id", sa.String(64), nullable=True, unique=True),
        sa.Column("sender_id", sa.String(128), nullable=True),
        sa.Column("campaign_title", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "delivered", "failed", "expired", name="sms_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("sent_at", sa.DateTime, nullable=True),
        sa.Column("delivered_at", sa.DateTime, nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("tracked_link_short_url", sa.String(512), nullable=True),
        sa.Column("tracked_link_original_url", sa.Text, nullable=True),
        sa.Column("decision_instance_id", sa.String(64), nullable=True),
        sa.Column(
            "decision_status",
            sa.Enum("pending", "yes", "no", name="decision_status_enum"),
            nullable=True,
        ),
        sa.Column("decision_deadline", sa.DateTime, nullable=True),
        sa.Column("has_response", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("response_id", sa.BigInteger, nullable=True),
        sa.Column("gateway_response", sa.JSON, nullable=True),
        sa.Column("webhook_data", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_sms_logs_mobile", "sms_logs", ["mobile_number", "created_at"])
    op.create_index("idx_sms_logs_instance", "sms_logs", ["install_id", "instance_id"])
    op.create_index("idx_sms_logs_decision", "sms_logs", ["decision_status", "decision_deadline"])

    # Inbound replies
    op.create_table(
        "sms_replies",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column(
            "sms_log_id",
            sa.BigInteger,
            sa.ForeignKey("sms_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("from_number", sa.String(32), nullable=False),
        sa.Column("to_number", sa.String(32), nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("message_id", sa.String(64), nullable=True),
        sa.Column("response_id", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("is_opt_out", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime, nullable=True),
        sa.Column("webhook_data", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_replies_feed", "sms_replies", ["install_id", "processed", "received_at"])
    op.create_index("idx_replies_from", "sms_replies", ["from_number"])

    # Link hits
    op.create_table(
        "link_hits",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("install_id", sa.String(64), nullable=False),
        sa.Column(
            "sms_log_id",
            sa.BigInteger,
            sa.ForeignKey("sms_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("mobile_number", sa.String(32), nullable=False),
        sa.Column("short_url", sa.String(512), nullable=True),
        sa.Column("original_url", sa.Text, nullable=True),
        sa.Column("clicked_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("device_type", sa.String(16), nullable=True),
        sa.Column("browser", sa.String(32), nullable=True),
        sa.Column("os", sa.String(32), nullable=True),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime, nullable=True),
        sa.Column("webhook_data", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_link_hits_feed", "link_hits", ["install_id", "processed", "clicked_at"])
    op.create_index("idx_link_hits_mobile", "link_hits", ["mobile_number"])

    # Callbacks that matched no send and no install
    op.create_table(
        "unmatched_webhooks",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(16), nullable=False),
        sa.Column("install_id", sa.String(64), nullable=True),
        sa.Column("message_id", sa.String(64), nullable=True),
        sa.Column("mobile_number", sa.String(32), nullable=True),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("received_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_unmatched_webhooks_message", "unmatched_webhooks", ["message_id"])
    op.create_index("idx_unmatched_webhooks_received", "unmatched_webhooks", ["received_at"])


def downgrade() -> None:
    op.drop_table("unmatched_webhooks")
    op.drop_table("link_hits")
    op.drop_table("sms_replies")
    op.drop_table("sms_logs")
    op.drop_table("sms_jobs")
    op.drop_table("decision_instances")
    op.drop_table("feeder_instances")
    op.drop_table("action_instances")
    op.drop_table("tenants")
