"""SMS job queue service.

Durable per-recipient SMS jobs with leasing, linear retry back-off and
terminal states. Every state transition is a conditional UPDATE that
uses the current status as the compare-and-set condition, so several
worker replicas can share the table without in-process locks.

Lifecycle:
    pending -> processing -> sent | failed
    processing -> pending (retryable failure, back-off applied)
    pending -> cancelled
"""

import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from smsbridge_core.domain.models import ErrorKind, JobStatus, SmsJob, utcnow
from smsbridge_core.observability.logging import get_logger
from smsbridge_core.observability.metrics import JOBS_REAPED, get_collector

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class JobQueueError(Exception):
    """Base exception for job queue operations."""
    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job id does not exist."""
    pass


class InvalidJobTransitionError(JobQueueError):
    """Raised when a job is not in the state a transition requires."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================


RETRYABLE_ERROR_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
    ErrorKind.SERVER_ERROR,
    ErrorKind.RATE_LIMITED,
    ErrorKind.STUCK,
})

TERMINAL_STATUSES = {JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED}
ALL_STATUSES = (
    JobStatus.PENDING,
    JobStatus.PROCESSING,
    JobStatus.SENT,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 60
DEFAULT_LEASE_SECONDS = 300
MAX_ERROR_LENGTH = 5000


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class JobSpec:
    """Everything needed to enqueue one SMS."""

    install_id: str
    instance_id: str
    mobile_number: str
    message: str
    contact_id: Optional[str] = None
    email_address: Optional[str] = None
    sender_id: Optional[str] = None
    campaign_title: Optional[str] = None
    execution_id: Optional[str] = None
    send_options: dict[str, Any] = field(default_factory=dict)
    custom_object_data: Optional[dict[str, Any]] = None
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass
class FailOutcome:
    """Result of recording a failed attempt."""

    job_id: str
    status: str
    retry_count: int
    scheduled_at: Optional[datetime] = None

    @property
    def will_retry(self) -> bool:
        return self.status == JobStatus.PENDING


# =============================================================================
# SERVICE
# =============================================================================


class JobService:
    """Service for SMS job queue operations."""

    def __init__(
        self,
        db: DBSession,
        backoff_seconds: int = DEFAULT_BACKOFF_SECONDS,
    ):
        """Initialize the job service.

        Args:
            db: SQLAlchemy database session.
            backoff_seconds: Linear back-off unit between retries.
        """
        self.db = db
        self.backoff_seconds = backoff_seconds

    def enqueue(
        self,
        batch: list[JobSpec],
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Create one pending job per spec.

        Each job is written in its own savepoint, so a record that fails
        to insert does not take the rest of the batch with it.

        Args:
            batch: Job specs from the dispatch entry point.
            now: Scheduling time (defaults to current UTC).

        Returns:
            Job ids of the jobs that were accepted, in batch order.
        """
        now = now or utcnow()
        job_ids: list[str] = []

        for spec in batch:
            job = SmsJob(
                job_id=str(uuid.uuid4()),
                install_id=spec.install_id,
                instance_id=spec.instance_id,
                execution_id=spec.execution_id,
                contact_id=spec.contact_id,
                email_address=spec.email_address,
                mobile_number=spec.mobile_number,
                message=spec.message,
                sender_id=spec.sender_id,
                campaign_title=spec.campaign_title,
                send_options=dict(spec.send_options or {}),
                custom_object_data=spec.custom_object_data,
                status=JobStatus.PENDING,
                scheduled_at=now,
                retry_count=0,
                max_retries=spec.max_retries,
                created_at=now,
                updated_at=now,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(job)
            except SQLAlchemyError:
                logger.error(
                    "jobs.enqueue_failed",
                    exc_info=True,
                    install_id=spec.install_id,
                    instance_id=spec.instance_id,
                    contact_id=spec.contact_id,
                )
                continue
            job_ids.append(job.job_id)

        return job_ids

    def get(self, job_id: str) -> Optional[SmsJob]:
        """Get a job by its public id, reloading any cached state."""
        return (
            self.db.query(SmsJob)
            .filter(SmsJob.job_id == job_id)
            .populate_existing()
            .first()
        )

    def claim(
        self,
        n: int,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> list[SmsJob]:
        """Lease up to n due jobs for a worker.

        Candidates are pending jobs with scheduled_at <= now, oldest
        schedule first with created_at as tie-break. Each candidate is
        taken with a conditional UPDATE on status, so a job claimed by
        another replica in the meantime is simply skipped.

        Args:
            n: Maximum number of jobs to lease.
            worker_id: Identifier of the claiming worker.
            now: Lease start time (defaults to current UTC).

        Returns:
            The leased jobs, now in processing state.
        """
        if n <= 0:
            return []

        now = now or utcnow()
        candidates = (
            self.db.query(SmsJob.job_id)
            .filter(
                SmsJob.status == JobStatus.PENDING,
                SmsJob.scheduled_at <= now,
            )
            .order_by(SmsJob.scheduled_at.asc(), SmsJob.created_at.asc(), SmsJob.id.asc())
            .limit(n)
            .all()
        )

        claimed: list[str] = []
        for (job_id,) in candidates:
            updated = (
                self.db.query(SmsJob)
                .filter(
                    SmsJob.job_id == job_id,
                    SmsJob.status == JobStatus.PENDING,
                )
                .update(
                    {
                        SmsJob.status: JobStatus.PROCESSING,
                        SmsJob.lease_started_at: now,
                        SmsJob.worker_id: worker_id,
                        SmsJob.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated:
                claimed.append(job_id)

        self.db.flush()
        if not claimed:
            return []

        return (
            self.db.query(SmsJob)
            .filter(SmsJob.job_id.in_(claimed))
            .order_by(SmsJob.scheduled_at.asc(), SmsJob.created_at.asc(), SmsJob.id.asc())
            .populate_existing()
            .all()
        )

    def complete(
        self,
        job_id: str,
        message_id: str,
        gateway_response: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> SmsJob:
        """Mark a processing job as sent.

        Args:
            job_id: The job id.
            message_id: Gateway message id (required).
            gateway_response: Raw gateway response body.
            now: Send time (defaults to current UTC).

        Returns:
            The updated job.

        Raises:
            ValueError: If message_id is empty.
            JobNotFoundError: If the job does not exist.
            InvalidJobTransitionError: If the job is not processing.
        """
        if not message_id:
            raise ValueError("message_id is required to complete a job")

        now = now or utcnow()
        updated = (
            self.db.query(SmsJob)
            .filter(
                SmsJob.job_id == job_id,
                SmsJob.status == JobStatus.PROCESSING,
            )
            .update(
                {
                    SmsJob.status: JobStatus.SENT,
                    SmsJob.message_id: str(message_id),
                    SmsJob.gateway_response: gateway_response,
                    SmsJob.sent_at: now,
                    SmsJob.last_error: None,
                    SmsJob.error_code: None,
                    SmsJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.flush()

        if not updated:
            self._raise_transition_error(job_id, "complete")

        return self.get(job_id)

    def attach_audit_entry(self, job_id: str, sms_log_id: int) -> None:
        """Record the audit entry id on a sent job."""
        self.db.query(SmsJob).filter(SmsJob.job_id == job_id).update(
            {SmsJob.sms_log_id: sms_log_id},
            synchronize_session=False,
        )
        self.db.flush()

    def fail(
        self,
        job_id: str,
        error_kind: str,
        error_code: Optional[str] = None,
        error_message: Union[str, Exception, None] = None,
        now: Optional[datetime] = None,
    ) -> FailOutcome:
        """Record a failed attempt on a processing job.

        Retryable kinds go back to pending with retry_count + 1 and
        scheduled_at = now + retry_count * backoff, until max_retries is
        reached. Everything else is terminal.

        Args:
            job_id: The job id.
            error_kind: One of ErrorKind.
            error_code: Gateway error code, if any.
            error_message: Error text or exception.
            now: Failure time (defaults to current UTC).

        Returns:
            FailOutcome describing the new state.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobTransitionError: If the job is not processing.
        """
        now = now or utcnow()
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.PROCESSING:
            raise InvalidJobTransitionError(
                f"Cannot fail job {job_id} in status '{job.status}'"
            )

        error_str = self.serialize_error(error_message) if error_message else error_kind
        retry = error_kind in RETRYABLE_ERROR_KINDS and job.retry_count < job.max_retries

        if retry:
            retry_count = job.retry_count + 1
            scheduled_at = now + timedelta(seconds=retry_count * self.backoff_seconds)
            values = {
                SmsJob.status: JobStatus.PENDING,
                SmsJob.retry_count: retry_count,
                SmsJob.scheduled_at: scheduled_at,
                SmsJob.lease_started_at: None,
                SmsJob.worker_id: None,
            }
            outcome = FailOutcome(job_id, JobStatus.PENDING, retry_count, scheduled_at)
        else:
            values = {SmsJob.status: JobStatus.FAILED}
            outcome = FailOutcome(job_id, JobStatus.FAILED, job.retry_count)

        values.update({
            SmsJob.last_error: error_str,
            SmsJob.error_code: str(error_code) if error_code is not None else error_kind,
            SmsJob.updated_at: now,
        })

        updated = (
            self.db.query(SmsJob)
            .filter(
                SmsJob.job_id == job_id,
                SmsJob.status == JobStatus.PROCESSING,
            )
            .update(values, synchronize_session=False)
        )
        self.db.flush()

        if not updated:
            raise InvalidJobTransitionError(f"Job {job_id} left processing concurrently")

        logger.info(
            "jobs.failed",
            job_id=job_id,
            error_kind=error_kind,
            status=outcome.status,
            retry_count=outcome.retry_count,
        )
        return outcome

    def reap(
        self,
        now: Optional[datetime] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> int:
        """Fail jobs whose lease has expired with error kind 'stuck'.

        Args:
            now: Reference time (defaults to current UTC).
            lease_seconds: Lease length; older processing jobs are reaped.

        Returns:
            Number of jobs reaped.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=lease_seconds)

        stuck = (
            self.db.query(SmsJob.job_id)
            .filter(
                SmsJob.status == JobStatus.PROCESSING,
                SmsJob.lease_started_at < cutoff,
            )
            .all()
        )

        reaped = 0
        for (job_id,) in stuck:
            try:
                self.fail(
                    job_id,
                    ErrorKind.STUCK,
                    error_message=f"Lease expired after {lease_seconds}s",
                    now=now,
                )
            except InvalidJobTransitionError:
                # Finished between the scan and the update
                continue
            reaped += 1

        if reaped:
            get_collector().increment(JOBS_REAPED, reaped)
            logger.warning("jobs.reaped", count=reaped)
        return reaped

    def cancel(self, job_id: str, now: Optional[datetime] = None) -> SmsJob:
        """Cancel a pending job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobTransitionError: If the job is not pending.
        """
        now = now or utcnow()
        updated = (
            self.db.query(SmsJob)
            .filter(
                SmsJob.job_id == job_id,
                SmsJob.status == JobStatus.PENDING,
            )
            .update(
                {SmsJob.status: JobStatus.CANCELLED, SmsJob.updated_at: now},
                synchronize_session=False,
            )
        )
        self.db.flush()

        if not updated:
            self._raise_transition_error(job_id, "cancel")

        return self.get(job_id)

    def stats(
        self,
        install_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> dict[str, int]:
        """Count jobs by status.

        Returns:
            Dict with one key per status plus "in_flight"
            (pending + processing) and "total".
        """
        query = self.db.query(SmsJob.status, func.count(SmsJob.id))
        if install_id:
            query = query.filter(SmsJob.install_id == install_id)
        if instance_id:
            query = query.filter(SmsJob.instance_id == instance_id)

        counts = {status: 0 for status in ALL_STATUSES}
        for status, count in query.group_by(SmsJob.status).all():
            counts[status] = count

        counts["in_flight"] = counts[JobStatus.PENDING] + counts[JobStatus.PROCESSING]
        counts["total"] = sum(counts[status] for status in ALL_STATUSES)
        return counts

    def list_jobs(
        self,
        install_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[SmsJob]:
        """List jobs, newest first, with optional filtering."""
        query = self.db.query(SmsJob)

        if install_id:
            query = query.filter(SmsJob.install_id == install_id)
        if instance_id:
            query = query.filter(SmsJob.instance_id == instance_id)
        if status:
            query = query.filter(SmsJob.status == status)

        return query.order_by(SmsJob.created_at.desc(), SmsJob.id.desc()).limit(limit).all()

    def cleanup_finished(
        self,
        older_than_days: int = 30,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete terminal jobs older than a cutoff.

        Audit entries are kept; only the queue rows go.

        Returns:
            Number of jobs deleted.
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        deleted = (
            self.db.query(SmsJob)
            .filter(
                SmsJob.status.in_(TERMINAL_STATUSES),
                SmsJob.updated_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return deleted

    def serialize_error(
        self,
        error: Union[str, Exception],
        include_traceback: bool = False,
    ) -> str:
        """Serialize an error to a string suitable for storage.

        Args:
            error: The error message or exception.
            include_traceback: Whether to include traceback.

        Returns:
            Serialized error string (truncated if too long).
        """
        if isinstance(error, Exception):
            if include_traceback:
                error_str = "".join(traceback.format_exception(error))
            else:
                error_str = f"{type(error).__name__}: {error}"
        else:
            error_str = str(error)

        if len(error_str) > MAX_ERROR_LENGTH:
            error_str = error_str[: MAX_ERROR_LENGTH - 3] + "..."

        return error_str

    def _raise_transition_error(self, job_id: str, action: str) -> None:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        raise InvalidJobTransitionError(
            f"Cannot {action} job {job_id} in status '{job.status}'"
        )


__all__ = [
    "ALL_STATUSES",
    "DEFAULT_BACKOFF_SECONDS",
    "DEFAULT_LEASE_SECONDS",
    "DEFAULT_MAX_RETRIES",
    "ErrorKind",
    "FailOutcome",
    "InvalidJobTransitionError",
    "JobNotFoundError",
    "JobQueueError",
    "JobService",
    "JobSpec",
    "MAX_ERROR_LENGTH",
    "RETRYABLE_ERROR_KINDS",
]
