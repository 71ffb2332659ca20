"""SMS dispatch service.

This service handles both ends of the outbound pipeline:
1. Batch acceptance: compile each platform record, resolve and format the
   recipient, build send options and enqueue one job per record
2. Job processing: send one claimed job through the gateway, then record
   the outcome (job state, audit entry, instance statistics, downstream
   custom object record)

Batch acceptance is synchronous and returns per-record results. Job
processing is a coroutine run by the dispatch worker, one per claimed
job, each with its own session.

Usage:
    service = DispatchService(db=session)

    # Platform notify
    batch = service.accept_batch(instance_id, items, execution_id="e1")
    session.commit()

    # Worker
    ok = await service.process_job(job_id)
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from smsbridge_core.config import get_settings
from smsbridge_core.domain.models import (
    ActionInstance,
    CountrySetting,
    ErrorKind,
    JobStatus,
    SmsJob,
    Tenant,
    utcnow,
)
from smsbridge_core.domain.services.audit import AuditService
from smsbridge_core.domain.services.instances import (
    InstanceConfigurationError,
    InstanceNotFoundError,
    InstanceService,
)
from smsbridge_core.domain.services.jobs import JobService, JobSpec
from smsbridge_core.domain.services.phone import PhoneFormatError, format_phone_number
from smsbridge_core.domain.services.template import (
    TemplateCompiler,
    field_value,
    get_template_compiler,
)
from smsbridge_core.domain.services.tenants import (
    GatewayCredentials,
    TenantCache,
    TenantNotFoundError,
    TenantService,
    TenantSnapshot,
)
from smsbridge_core.observability.logging import SmsContext, get_logger
from smsbridge_core.observability.metrics import (
    GATEWAY_SEND_SECONDS,
    JOBS_ENQUEUED,
    SMS_FAILED,
    SMS_RETRIED,
    SMS_SENT,
    get_collector,
)
from smsbridge_core.providers.base import GatewayError, SmsGateway, SmsSendOptions
from smsbridge_core.providers.eloqua.client import EloquaClient, PlatformError
from smsbridge_core.providers.transmitsms.adapter import TRACKED_LINK_TOKEN, TransmitSmsAdapter

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================


SEND_DEADLINE_SECONDS = 30.0

NOTIFICATION_SENT = "sent"
NOTIFICATION_FAILED = "failed"

# Instance attribute -> downstream custom object value source
DOWNSTREAM_FIELDS = (
    "mobile_field",
    "email_field",
    "outgoing_field",
    "notification_field",
    "vn_field",
    "title_field",
)

GatewayFactory = Callable[[GatewayCredentials], SmsGateway]
PlatformFactory = Callable[[TenantSnapshot, Optional[str]], Optional[EloquaClient]]


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class RecordResult:
    """Outcome of accepting one platform record."""

    contact_id: Optional[str]
    success: bool
    job_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"contactId": self.contact_id, "success": self.success}
        if self.success:
            result["jobId"] = self.job_id
        else:
            result["error"] = self.error
        return result


@dataclass
class BatchResult:
    """Outcome of accepting a platform batch."""

    instance_id: str
    results: list[RecordResult] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def rejected(self) -> int:
        return len(self.results) - self.accepted

    @property
    def job_ids(self) -> list[str]:
        return [r.job_id for r in self.results if r.job_id]


# =============================================================================
# HELPERS
# =============================================================================


def record_attr(record: Mapping[str, Any], *names: str) -> Optional[str]:
    """First non-empty attribute among names, compared case-insensitively."""
    lowered = {str(k).lower(): v for k, v in record.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value not in (None, ""):
            return str(value)
    return None


def with_query(url: str, params: Mapping[str, Optional[str]]) -> str:
    """Append correlation parameters to a callback URL."""
    query = urlencode({k: v if v is not None else "" for k, v in params.items()})
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def default_gateway_factory(credentials: GatewayCredentials) -> SmsGateway:
    settings = get_settings()
    return TransmitSmsAdapter(
        api_key=credentials.api_key,
        api_secret=credentials.api_secret,
        base_url=settings.gateway_base_url,
        timeout=settings.gateway_timeout_seconds,
    )


def default_platform_factory(tenant: TenantSnapshot, token: Optional[str]) -> Optional[EloquaClient]:
    if not token:
        return None
    return EloquaClient(
        token=token,
        site_id=tenant.site_id,
        timeout=get_settings().platform_timeout_seconds,
    )


# =============================================================================
# SERVICE
# =============================================================================


class DispatchService:
    """Service for accepting SMS batches and processing queued jobs."""

    def __init__(
        self,
        db: Session,
        compiler: Optional[TemplateCompiler] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        platform_factory: Optional[PlatformFactory] = None,
        tenant_cache: Optional[TenantCache] = None,
    ):
        """Initialize the dispatch service.

        Args:
            db: SQLAlchemy database session.
            compiler: Template compiler (process-wide one by default).
            gateway_factory: Builds a gateway from tenant credentials.
            platform_factory: Builds a platform client for a tenant, or
                returns None when the tenant has no platform token.
            tenant_cache: Shared tenant snapshot cache; tenants are read
                straight from the database when omitted.
        """
        self.db = db
        self.compiler = compiler or get_template_compiler()
        self.gateway_factory = gateway_factory or default_gateway_factory
        self.platform_factory = platform_factory or default_platform_factory
        self.tenant_cache = tenant_cache
        self.settings = get_settings()
        self.tenants = TenantService(db)
        self.instances = InstanceService(db)
        self.jobs = JobService(db, backoff_seconds=self.settings.retry_backoff_seconds)
        self.audit = AuditService(db)

    # -------------------------------------------------------------------------
    # Batch acceptance
    # -------------------------------------------------------------------------

    def accept_batch(
        self,
        instance_id: str,
        items: list[Mapping[str, Any]],
        execution_id: Optional[str] = None,
    ) -> BatchResult:
        """Compile and enqueue one job per platform record.

        A record that cannot be addressed is reported as a per-record
        error; the rest of the batch is still enqueued. Duplicate records
        are enqueued (and sent) once per occurrence.

        Raises:
            InstanceNotFoundError: Unknown or deleted instance.
            TenantNotFoundError: The instance's tenant is not installed.
            MissingCredentialsError: The tenant has no gateway credentials.
            InstanceConfigurationError: The instance has no template.
        """
        instance = self.instances.get_action(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Action instance {instance_id} not found")

        tenant = self.tenants.require(instance.install_id)
        # Raises MissingCredentialsError before anything is enqueued
        self.tenants.get_gateway_credentials(tenant)

        if not instance.template:
            raise InstanceConfigurationError("Instance has no message template")

        compiled = self.compiler.compile(instance)
        callbacks = self.tenants.callback_urls(tenant, self.settings.base_url)
        downstream = self._downstream_spec(instance)

        batch = BatchResult(instance_id=instance_id)
        pending: list[tuple[RecordResult, JobSpec]] = []

        for record in items:
            contact_id = record_attr(record, "ContactID", "contactId", "Id")
            email = record_attr(record, "EmailAddress", "emailAddress")

            raw_mobile = field_value(record, instance.recipient_field)
            if not raw_mobile:
                batch.results.append(
                    RecordResult(contact_id, False, error="Mobile number not found")
                )
                continue

            country = self._country_for(instance, tenant, record)
            try:
                mobile = format_phone_number(raw_mobile, country)
            except PhoneFormatError as e:
                batch.results.append(RecordResult(contact_id, False, error=str(e)))
                continue

            rendered = compiled.render(record)
            if TRACKED_LINK_TOKEN in rendered.message and not rendered.tracked_link_url:
                batch.results.append(
                    RecordResult(
                        contact_id,
                        False,
                        error="Message contains [tracked-link] but no tracked link URL is configured",
                    )
                )
                continue

            hints = {
                "installId": instance.install_id,
                "instanceId": instance.instance_id,
                "contactId": contact_id,
                "emailAddress": email,
                "campaignId": instance.asset_id,
            }
            send_options: dict[str, Any] = {
                name: with_query(url, hints) for name, url in callbacks.items()
            }
            if instance.message_expiry:
                send_options["validity"] = instance.message_validity
            if TRACKED_LINK_TOKEN in rendered.message:
                send_options["tracked_link_url"] = rendered.tracked_link_url

            result = RecordResult(contact_id, True)
            pending.append((
                result,
                JobSpec(
                    install_id=instance.install_id,
                    instance_id=instance.instance_id,
                    mobile_number=mobile,
                    message=rendered.message,
                    contact_id=contact_id,
                    email_address=email,
                    sender_id=rendered.sender_id,
                    campaign_title=instance.asset_name,
                    execution_id=execution_id,
                    send_options=send_options,
                    custom_object_data=downstream,
                    max_retries=self.settings.job_max_retries,
                ),
            ))
            batch.results.append(result)

        enqueued = 0
        for result, spec in pending:
            job_ids = self.jobs.enqueue([spec])
            if job_ids:
                result.job_id = job_ids[0]
                enqueued += 1
            else:
                result.success = False
                result.error = "Failed to enqueue"

        if enqueued:
            get_collector().increment(JOBS_ENQUEUED, enqueued)

        logger.info(
            "dispatch.batch_accepted",
            context=SmsContext(install_id=instance.install_id, instance_id=instance_id),
            execution_id=execution_id,
            accepted=batch.accepted,
            rejected=batch.rejected,
        )
        return batch

    @staticmethod
    def _country_for(
        instance: ActionInstance,
        tenant: Tenant,
        record: Mapping[str, Any],
    ) -> Optional[str]:
        if instance.country_setting == CountrySetting.CUSTOM_FIELD and instance.country_field:
            country = field_value(record, instance.country_field)
        else:
            country = record_attr(record, "Country", "C_Country")
        return country or tenant.default_country

    @staticmethod
    def _downstream_spec(instance: ActionInstance) -> Optional[dict[str, Any]]:
        if not instance.custom_object_id:
            return None
        fields = {
            name: getattr(instance, name)
            for name in DOWNSTREAM_FIELDS
            if getattr(instance, name)
        }
        return {"custom_object_id": instance.custom_object_id, "fields": fields}

    # -------------------------------------------------------------------------
    # Job processing
    # -------------------------------------------------------------------------

    async def process_job(
        self,
        job_id: str,
        gateway: Optional[SmsGateway] = None,
        platform: Optional[EloquaClient] = None,
        deadline: float = SEND_DEADLINE_SECONDS,
    ) -> bool:
        """Send one claimed job and record the outcome.

        The job must be in processing (claimed by this worker). State
        transitions are committed before the downstream custom object
        write, so a platform failure can never undo a send.

        Args:
            job_id: The claimed job.
            gateway: Gateway to send through (built from the tenant's
                credentials when omitted).
            platform: Platform client for downstream writes (built from
                the tenant's token when omitted).
            deadline: Total seconds allowed for the gateway call.

        Returns:
            True if the SMS was sent.
        """
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            logger.warning("dispatch.job_not_processing", job_id=job_id)
            return False

        context = SmsContext(
            install_id=job.install_id,
            instance_id=job.instance_id,
            job_id=job.job_id,
        )

        tenant = self._tenant_snapshot(job.install_id)
        instance = self.instances.get_action(job.instance_id)

        if gateway is None:
            if tenant is None or tenant.credentials is None:
                self._record_failure(
                    job, instance, ErrorKind.CONFIGURATION, None,
                    "TransmitSMS API not configured", context,
                )
                return False
            gateway = self.gateway_factory(tenant.credentials)

        if platform is None and tenant is not None and job.custom_object_data:
            platform = self.platform_factory(tenant, tenant.platform_token)

        options = SmsSendOptions.from_dict(job.send_options, sender_id=self._sender(job))

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                gateway.send_sms(job.mobile_number, job.message, options),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            get_collector().record_histogram(GATEWAY_SEND_SECONDS, time.monotonic() - started)
            outcome = self._record_failure(
                job, instance, ErrorKind.TIMEOUT, None,
                f"Gateway send exceeded {deadline:.0f}s", context,
            )
            await self._notify_failure(job, instance, platform, outcome)
            return False
        except GatewayError as e:
            get_collector().record_histogram(GATEWAY_SEND_SECONDS, time.monotonic() - started)
            outcome = self._record_failure(job, instance, e.kind, e.code, e.message, context)
            await self._notify_failure(job, instance, platform, outcome)
            return False
        except Exception as e:
            logger.error("dispatch.send_crashed", context=context, exc_info=True)
            outcome = self._record_failure(job, instance, ErrorKind.NETWORK, None, e, context)
            await self._notify_failure(job, instance, platform, outcome)
            return False

        get_collector().record_histogram(GATEWAY_SEND_SECONDS, time.monotonic() - started)

        now = utcnow()
        sent_job = self.jobs.complete(job.job_id, result.message_id, result.raw, now=now)
        entry = self.audit.record_sent(
            sent_job,
            result.message_id,
            gateway_response=result.raw,
            tracked_link_short_url=result.tracked_link_short_url,
            tracked_link_original_url=result.tracked_link_original_url,
            decision_instance_id=instance.decision_instance_id if instance else None,
            decision_deadline=self._decision_deadline(instance, now),
            sent_at=now,
        )
        self.jobs.attach_audit_entry(sent_job.job_id, entry.id)
        self.instances.increment_sent(job.instance_id, now)
        self.db.commit()

        get_collector().increment(SMS_SENT)
        context.message_id = result.message_id
        logger.info("dispatch.sent", context=context, to=job.mobile_number)

        if platform is not None and job.custom_object_data:
            await self._write_downstream(
                platform, job.custom_object_data, sent_job, NOTIFICATION_SENT
            )
        return True

    def _tenant_snapshot(self, install_id: str) -> Optional[TenantSnapshot]:
        if self.tenant_cache is not None:
            return self.tenant_cache.get(self.db, install_id)
        tenant = self.tenants.get(install_id)
        return self.tenants.snapshot(tenant) if tenant is not None else None

    def _sender(self, job: SmsJob) -> Optional[str]:
        # An unresolved dynamic sender falls back to the account default
        if job.sender_id and job.sender_id.startswith("##"):
            return None
        return job.sender_id or None

    def _decision_deadline(
        self,
        instance: Optional[ActionInstance],
        now: datetime,
    ) -> Optional[datetime]:
        if instance is None or not instance.decision_instance_id:
            return None
        hours = instance.decision_window_hours
        if not hours:
            decision = self.instances.get_decision(instance.decision_instance_id)
            hours = decision.evaluation_period if decision else None
        if not hours:
            return None
        return now + timedelta(hours=hours)

    def _record_failure(
        self,
        job: SmsJob,
        instance: Optional[ActionInstance],
        kind: str,
        code: Optional[str],
        message: Any,
        context: SmsContext,
    ):
        outcome = self.jobs.fail(job.job_id, kind, code, message)
        self.instances.increment_failed(job.instance_id)
        self.db.commit()

        if outcome.will_retry:
            get_collector().increment(SMS_RETRIED)
        else:
            get_collector().increment(SMS_FAILED, labels={"kind": kind})

        logger.warning(
            "dispatch.send_failed",
            context=context,
            error_kind=kind,
            error_code=code,
            will_retry=outcome.will_retry,
            retry_count=outcome.retry_count,
        )
        return outcome

    async def _notify_failure(self, job, instance, platform, outcome) -> None:
        if outcome.will_retry or platform is None or not job.custom_object_data:
            return
        await self._write_downstream(platform, job.custom_object_data, job, NOTIFICATION_FAILED)

    async def _write_downstream(
        self,
        platform: EloquaClient,
        spec: Mapping[str, Any],
        job: SmsJob,
        notification: str,
    ) -> None:
        """Create the downstream custom object record; never raises."""
        field_values = build_field_values(spec.get("fields") or {}, job, notification)
        if not field_values:
            return
        try:
            await asyncio.wait_for(
                platform.create_custom_object_record(spec["custom_object_id"], field_values),
                timeout=self.settings.platform_timeout_seconds,
            )
        except (PlatformError, asyncio.TimeoutError) as e:
            logger.error(
                "dispatch.downstream_write_failed",
                job_id=job.job_id,
                custom_object_id=spec.get("custom_object_id"),
                error=str(e),
            )


def build_field_values(
    fields: Mapping[str, str],
    job: SmsJob,
    notification: str,
) -> list[dict[str, Any]]:
    """Field values for the downstream custom object record."""
    sources = {
        "mobile_field": job.mobile_number,
        "email_field": job.email_address or "",
        "outgoing_field": job.message,
        "notification_field": notification,
        "vn_field": job.sender_id,
        "title_field": job.campaign_title or "",
    }
    values = []
    for name in DOWNSTREAM_FIELDS:
        field_id = fields.get(name)
        if not field_id:
            continue
        value = sources[name]
        if name == "vn_field" and not value:
            continue
        values.append({"id": str(field_id), "value": value})
    return values


__all__ = [
    "BatchResult",
    "DispatchService",
    "GatewayFactory",
    "PlatformFactory",
    "RecordResult",
    "build_field_values",
    "default_gateway_factory",
    "default_platform_factory",
    "record_attr",
    "with_query",
]
