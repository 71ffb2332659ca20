"""Unit tests for the SMS job queue.

Tests cover:
- Enqueueing a batch
- Claiming (ordering, due time, compare-and-set)
- Completion, retryable and terminal failure
- Lease expiry reaping
- Cancellation, stats and cleanup
- Error serialization
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from smsbridge_core.domain.models import ErrorKind, JobStatus, SmsJob, utcnow
from tests.factories import create_job


def make_spec(**overrides):
    from smsbridge_core.domain.services.jobs import JobSpec

    values = dict(
        install_id="install-1",
        instance_id="instance-1",
        mobile_number="+61412345678",
        message="Hello",
    )
    values.update(overrides)
    return JobSpec(**values)


class TestEnqueue:
    """Tests for enqueue."""

    def test_enqueue_creates_pending_jobs(self, db_session: Session):
        """Test that each spec becomes one pending job, in order."""
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        job_ids = JobService(db_session).enqueue(
            [make_spec(contact_id="1"), make_spec(contact_id="2")],
            now=now,
        )

        assert len(job_ids) == 2
        jobs = [db_session.query(SmsJob).filter_by(job_id=j).one() for j in job_ids]
        assert [job.contact_id for job in jobs] == ["1", "2"]
        for job in jobs:
            assert job.status == JobStatus.PENDING
            assert job.scheduled_at == now
            assert job.retry_count == 0
            assert job.max_retries == 3

    def test_enqueue_keeps_send_options(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        options = {"validity": 24, "dlr_callback": "https://x/dlr?a=1"}
        (job_id,) = JobService(db_session).enqueue([make_spec(send_options=options)])

        assert JobService(db_session).get(job_id).send_options == options

    def test_enqueue_empty_batch(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        assert JobService(db_session).enqueue([]) == []


class TestClaim:
    """Tests for claiming due jobs."""

    def test_claim_leases_jobs(self, db_session: Session):
        """Test that claimed jobs move to processing with a lease."""
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session)
        now = utcnow()

        claimed = JobService(db_session).claim(5, "worker-a", now=now)

        assert [j.job_id for j in claimed] == [job.job_id]
        assert claimed[0].status == JobStatus.PROCESSING
        assert claimed[0].worker_id == "worker-a"
        assert claimed[0].lease_started_at == now

    def test_claim_respects_limit_and_order(self, db_session: Session):
        """Test that the oldest scheduled jobs are claimed first."""
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        late = create_job(db_session, scheduled_at=now - timedelta(seconds=10))
        early = create_job(db_session, scheduled_at=now - timedelta(seconds=60))
        create_job(db_session, scheduled_at=now - timedelta(seconds=5))

        claimed = JobService(db_session).claim(2, "worker-a", now=now)

        assert [j.job_id for j in claimed] == [early.job_id, late.job_id]

    def test_claim_skips_future_jobs(self, db_session: Session):
        """Test that backed-off jobs are not claimed before they are due."""
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        create_job(db_session, scheduled_at=now + timedelta(seconds=60))

        assert JobService(db_session).claim(5, "worker-a", now=now) == []

    def test_claimed_job_not_claimed_twice(self, db_session: Session):
        """Test that a second claim never returns a leased job."""
        from smsbridge_core.domain.services.jobs import JobService

        create_job(db_session)
        service = JobService(db_session)

        first = service.claim(5, "worker-a")
        second = service.claim(5, "worker-b")

        assert len(first) == 1
        assert second == []

    def test_claim_zero(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        create_job(db_session)
        assert JobService(db_session).claim(0, "worker-a") == []


class TestComplete:
    """Tests for completing a send."""

    def test_complete_marks_sent(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING)
        sent = JobService(db_session).complete(job.job_id, "9001", {"message_id": 9001})

        assert sent.status == JobStatus.SENT
        assert sent.message_id == "9001"
        assert sent.gateway_response == {"message_id": 9001}
        assert sent.sent_at is not None

    def test_complete_requires_message_id(self, db_session: Session):
        """Test that a sent job always carries a gateway message id."""
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING)
        with pytest.raises(ValueError):
            JobService(db_session).complete(job.job_id, "")

    def test_complete_requires_processing(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import InvalidJobTransitionError, JobService

        job = create_job(db_session, status=JobStatus.PENDING)
        with pytest.raises(InvalidJobTransitionError):
            JobService(db_session).complete(job.job_id, "1")

    def test_complete_missing_job(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobNotFoundError, JobService

        with pytest.raises(JobNotFoundError):
            JobService(db_session).complete("missing", "1")


class TestFail:
    """Tests for retryable and terminal failures."""

    def test_retryable_failure_backs_off(self, db_session: Session):
        """Test that a retryable failure is rescheduled linearly."""
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING, worker_id="w")
        now = utcnow()

        outcome = JobService(db_session, backoff_seconds=60).fail(
            job.job_id, ErrorKind.SERVER_ERROR, "500", "upstream error", now=now
        )

        assert outcome.will_retry is True
        assert outcome.retry_count == 1
        assert outcome.scheduled_at == now + timedelta(seconds=60)

        reloaded = JobService(db_session).get(job.job_id)
        assert reloaded.status == JobStatus.PENDING
        assert reloaded.worker_id is None
        assert reloaded.lease_started_at is None
        assert reloaded.last_error == "upstream error"
        assert reloaded.error_code == "500"

    def test_second_retry_waits_longer(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING, retry_count=1)
        now = utcnow()

        outcome = JobService(db_session, backoff_seconds=60).fail(
            job.job_id, ErrorKind.TIMEOUT, now=now
        )

        assert outcome.retry_count == 2
        assert outcome.scheduled_at == now + timedelta(seconds=120)

    def test_retries_exhausted(self, db_session: Session):
        """Test that a retryable failure is terminal after max_retries."""
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING, retry_count=3, max_retries=3)
        outcome = JobService(db_session).fail(job.job_id, ErrorKind.NETWORK)

        assert outcome.will_retry is False
        assert outcome.status == JobStatus.FAILED
        assert outcome.retry_count == 3

    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.INVALID_RECIPIENT,
            ErrorKind.AUTH_REJECTED,
            ErrorKind.QUOTA_EXHAUSTED,
            ErrorKind.CLIENT_ERROR,
            ErrorKind.CONFIGURATION,
        ],
    )
    def test_terminal_kinds_fail_immediately(self, db_session: Session, kind):
        """Test that non-retryable kinds never go back to pending."""
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session, status=JobStatus.PROCESSING)
        outcome = JobService(db_session).fail(job.job_id, kind)

        assert outcome.status == JobStatus.FAILED
        assert JobService(db_session).get(job.job_id).error_code == kind

    def test_fail_requires_processing(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import InvalidJobTransitionError, JobService

        job = create_job(db_session, status=JobStatus.SENT)
        with pytest.raises(InvalidJobTransitionError):
            JobService(db_session).fail(job.job_id, ErrorKind.NETWORK)


class TestReap:
    """Tests for lease expiry."""

    def test_reap_returns_stuck_jobs_to_queue(self, db_session: Session):
        """Test that an expired lease is treated as a retryable stuck failure."""
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        stuck = create_job(
            db_session,
            status=JobStatus.PROCESSING,
            lease_started_at=now - timedelta(seconds=600),
        )
        fresh = create_job(
            db_session,
            status=JobStatus.PROCESSING,
            lease_started_at=now - timedelta(seconds=10),
        )

        service = JobService(db_session)
        assert service.reap(now=now, lease_seconds=300) == 1

        assert service.get(stuck.job_id).status == JobStatus.PENDING
        assert service.get(stuck.job_id).error_code == ErrorKind.STUCK
        assert service.get(fresh.job_id).status == JobStatus.PROCESSING

    def test_reap_counts_metric(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService
        from smsbridge_core.observability.metrics import JOBS_REAPED, get_collector

        now = utcnow()
        create_job(
            db_session,
            status=JobStatus.PROCESSING,
            lease_started_at=now - timedelta(hours=1),
        )
        JobService(db_session).reap(now=now)

        assert get_collector().get(JOBS_REAPED) == 1


class TestCancelStatsCleanup:
    """Tests for cancel, stats and cleanup."""

    def test_cancel_pending(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        job = create_job(db_session)
        assert JobService(db_session).cancel(job.job_id).status == JobStatus.CANCELLED

    def test_cancel_processing_rejected(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import InvalidJobTransitionError, JobService

        job = create_job(db_session, status=JobStatus.PROCESSING)
        with pytest.raises(InvalidJobTransitionError):
            JobService(db_session).cancel(job.job_id)

    def test_stats(self, db_session: Session):
        """Test that stats report each status and the in-flight total."""
        from smsbridge_core.domain.services.jobs import JobService

        create_job(db_session)
        create_job(db_session)
        create_job(db_session, status=JobStatus.PROCESSING)
        create_job(db_session, status=JobStatus.SENT)
        create_job(db_session, install_id="other", status=JobStatus.FAILED)

        stats = JobService(db_session).stats(install_id="install-1")

        assert stats[JobStatus.PENDING] == 2
        assert stats[JobStatus.PROCESSING] == 1
        assert stats[JobStatus.SENT] == 1
        assert stats[JobStatus.FAILED] == 0
        assert stats["in_flight"] == 3
        assert stats["total"] == 4

    def test_cleanup_only_old_terminal_jobs(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        old = now - timedelta(days=40)
        create_job(db_session, status=JobStatus.SENT, updated_at=old)
        create_job(db_session, status=JobStatus.PENDING, updated_at=old)
        create_job(db_session, status=JobStatus.FAILED, updated_at=now)

        deleted = JobService(db_session).cleanup_finished(older_than_days=30, now=now)

        assert deleted == 1
        assert db_session.query(SmsJob).count() == 2

    def test_list_jobs_filters_newest_first(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        now = utcnow()
        older = create_job(db_session, created_at=now - timedelta(minutes=5))
        newer = create_job(db_session, created_at=now)
        create_job(db_session, status=JobStatus.SENT)
        create_job(db_session, instance_id="instance-2")

        service = JobService(db_session)
        pending = service.list_jobs(
            install_id="install-1", instance_id="instance-1", status=JobStatus.PENDING
        )

        assert [job.job_id for job in pending] == [newer.job_id, older.job_id]
        assert len(service.list_jobs(limit=2)) == 2


class TestErrorSerialization:
    """Tests for serialize_error."""

    def test_exception_includes_type(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import JobService

        text = JobService(db_session).serialize_error(RuntimeError("boom"))
        assert text == "RuntimeError: boom"

    def test_long_errors_truncated(self, db_session: Session):
        from smsbridge_core.domain.services.jobs import MAX_ERROR_LENGTH, JobService

        text = JobService(db_session).serialize_error("x" * (MAX_ERROR_LENGTH + 100))
        assert len(text) == MAX_ERROR_LENGTH
        assert text.endswith("...")
