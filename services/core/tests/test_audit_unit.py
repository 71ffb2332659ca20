"""Unit tests for the SMS audit log service."""

from datetime import timedelta

from sqlalchemy.orm import Session

from smsbridge_core.domain.models import DecisionStatus, JobStatus, SmsStatus, utcnow
from tests.factories import create_job, create_sms_log


class TestRecordSent:
    """Tests for record_sent."""

    def test_entry_copies_job(self, db_session: Session):
        """Test that the audit entry mirrors the sent job."""
        from smsbridge_core.domain.services.audit import AuditService

        job = create_job(
            db_session,
            status=JobStatus.SENT,
            contact_id="c1",
            email_address="ada@example.com",
            sender_id="ACME",
        )
        entry = AuditService(db_session).record_sent(
            job,
            "9001",
            gateway_response={"message_id": 9001},
            tracked_link_short_url="https://tapth.is/x",
        )

        assert entry.id is not None
        assert entry.job_id == job.job_id
        assert entry.message_id == "9001"
        assert entry.status == SmsStatus.SENT
        assert entry.contact_id == "c1"
        assert entry.email_address == "ada@example.com"
        assert entry.sender_id == "ACME"
        assert entry.tracked_link_short_url == "https://tapth.is/x"
        assert entry.decision_status is None

    def test_decision_deadline_marks_pending(self, db_session: Session):
        """Test that a following decision step starts out pending."""
        from smsbridge_core.domain.services.audit import AuditService

        job = create_job(db_session, status=JobStatus.SENT)
        deadline = utcnow() + timedelta(hours=24)
        entry = AuditService(db_session).record_sent(
            job, "1", decision_instance_id="dec-1", decision_deadline=deadline
        )

        assert entry.decision_status == DecisionStatus.PENDING
        assert entry.decision_deadline == deadline


class TestLookups:
    """Tests for correlation lookups."""

    def test_get_by_message_id(self, db_session: Session):
        from smsbridge_core.domain.services.audit import AuditService

        entry = create_sms_log(db_session, message_id="555")
        service = AuditService(db_session)

        assert service.get_by_message_id("555").id == entry.id
        assert service.get_by_message_id(555).id == entry.id
        assert service.get_by_message_id(None) is None
        assert service.get_by_message_id("404") is None

    def test_latest_for_mobile_tolerates_missing_plus(self, db_session: Session):
        """Test that gateway numbers without a plus still match."""
        from smsbridge_core.domain.services.audit import AuditService

        now = utcnow()
        create_sms_log(db_session, message_id="1", created_at=now - timedelta(hours=2))
        newest = create_sms_log(db_session, message_id="2", created_at=now)

        found = AuditService(db_session).latest_for_mobile("61412345678")
        assert found.id == newest.id

    def test_latest_for_mobile_with_tracked_link(self, db_session: Session):
        """Test that link-hit correlation only considers entries with a link."""
        from smsbridge_core.domain.services.audit import AuditService

        now = utcnow()
        linked = create_sms_log(
            db_session,
            message_id="1",
            tracked_link_short_url="https://tapth.is/a",
            created_at=now - timedelta(hours=1),
        )
        create_sms_log(db_session, message_id="2", created_at=now)

        found = AuditService(db_session).latest_for_mobile(
            "+61412345678", require_tracked_link=True
        )
        assert found.id == linked.id


class TestListing:
    """Tests for list_entries and count_by_status."""

    def test_list_paginates_newest_first(self, db_session: Session):
        """Test that the cursor walks the log without gaps or repeats."""
        from smsbridge_core.domain.services.audit import AuditService

        now = utcnow()
        ids = [
            create_sms_log(
                db_session,
                message_id=str(i),
                created_at=now - timedelta(minutes=i),
            ).id
            for i in range(5)
        ]
        service = AuditService(db_session)

        page1, cursor = service.list_entries(install_id="install-1", limit=2)
        page2, cursor2 = service.list_entries(install_id="install-1", limit=2, cursor=cursor)
        page3, cursor3 = service.list_entries(install_id="install-1", limit=2, cursor=cursor2)

        seen = [e.id for e in page1 + page2 + page3]
        assert seen == ids
        assert cursor3 is None

    def test_list_filters(self, db_session: Session):
        from smsbridge_core.domain.services.audit import AuditService

        create_sms_log(db_session, message_id="1", status=SmsStatus.DELIVERED)
        create_sms_log(db_session, message_id="2", status=SmsStatus.FAILED)
        create_sms_log(db_session, message_id="3", install_id="other")

        entries, _ = AuditService(db_session).list_entries(
            install_id="install-1", status=SmsStatus.DELIVERED
        )
        assert [e.message_id for e in entries] == ["1"]

    def test_bad_cursor_ignored(self, db_session: Session):
        from smsbridge_core.domain.services.audit import AuditService

        create_sms_log(db_session)
        entries, _ = AuditService(db_session).list_entries(cursor="not-a-cursor")
        assert len(entries) == 1

    def test_count_by_status(self, db_session: Session):
        from smsbridge_core.domain.services.audit import AuditService

        create_sms_log(db_session, message_id="1", status=SmsStatus.DELIVERED)
        create_sms_log(db_session, message_id="2", status=SmsStatus.DELIVERED)
        create_sms_log(db_session, message_id="3", status=SmsStatus.SENT)

        counts = AuditService(db_session).count_by_status(install_id="install-1")

        assert counts[SmsStatus.DELIVERED] == 2
        assert counts[SmsStatus.SENT] == 1
        assert counts[SmsStatus.EXPIRED] == 0
