"""Integration tests for the action step endpoints.

Tests cover:
- Instance lifecycle (create, configure, copy, delete)
- POST /action/notify batch acceptance
- Sender id lookup
- Job statistics and cancellation
"""

import pytest
from httpx import AsyncClient

from smsbridge_core.domain.models import ActionInstance, JobStatus, SmsJob
from tests.factories import create_action_instance, create_job, create_tenant


class TestActionLifecycle:
    """Integration tests for create, configure, copy and delete."""

    @pytest.mark.asyncio
    async def test_create_instance(self, client: AsyncClient, db_session):
        """Test that an installed tenant can create an instance."""
        create_tenant(db_session)
        db_session.commit()

        response = await client.post(
            "/action/create",
            params={"installId": "install-1", "siteId": "3456789", "instanceId": "act-1"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "instanceId": "act-1",
            "requiresConfiguration": True,
        }
        db_session.expire_all()
        assert db_session.query(ActionInstance).filter_by(instance_id="act-1").one().requires_configuration

    @pytest.mark.asyncio
    async def test_create_requires_install(self, client: AsyncClient):
        response = await client.post(
            "/action/create", params={"installId": "nobody", "siteId": "1"}
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_configure_pushes_record_definition(self, client: AsyncClient, db_session, fake_platform):
        """Test that saving a template pushes the compiled definition upstream."""
        create_tenant(db_session, platform_token="dG9rZW4=")
        create_action_instance(db_session, instance_id="act-1", template=None)
        db_session.commit()

        response = await client.post(
            "/action/configure",
            params={"instanceId": "act-1"},
            json={"template": "Hi [FirstName]", "recipient_field": "MobilePhone", "caller_id": "ACME"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["template"] == "Hi [FirstName]"
        assert data["requires_configuration"] is False
        assert data["version"] == 2
        assert data["record_definition"]["FirstName"] == "{{Contact.Field(C_FirstName)}}"
        assert data["record_definition"]["MobilePhone"] == "{{Contact.Field(C_MobilePhone)}}"

        instance_id, body = fake_platform.instance_updates[0]
        assert instance_id == "act-1"
        assert body["recordDefinition"] == data["record_definition"]
        assert body["requiresConfiguration"] is False

    @pytest.mark.asyncio
    async def test_configure_rejects_bad_validity(self, client: AsyncClient, db_session):
        create_tenant(db_session)
        create_action_instance(db_session, instance_id="act-1")
        db_session.commit()

        response = await client.post(
            "/action/configure",
            params={"instanceId": "act-1"},
            json={"message_validity": 500},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_configuration(self, client: AsyncClient, db_session):
        create_tenant(db_session)
        create_action_instance(db_session, instance_id="act-1")
        db_session.commit()

        response = await client.get("/action/configure", params={"instanceId": "act-1"})
        missing = await client.get("/action/configure", params={"instanceId": "nope"})

        assert response.status_code == 200
        assert response.json()["record_definition"]["ContactID"] == "{{Contact.Id}}"
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_copy_resets_statistics(self, client: AsyncClient, db_session):
        create_tenant(db_session)
        create_action_instance(db_session, instance_id="act-1", sent_count=10, failed_count=2)
        db_session.commit()

        response = await client.post(
            "/action/copy", params={"instanceId": "act-1", "newInstanceId": "act-2"}
        )

        assert response.status_code == 200
        assert response.json()["instanceId"] == "act-2"
        db_session.expire_all()
        copy = db_session.query(ActionInstance).filter_by(instance_id="act-2").one()
        assert copy.template == "Hi [FirstName], your code is [Code]"
        assert copy.sent_count == 0
        assert copy.failed_count == 0

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient, db_session):
        create_tenant(db_session)
        create_action_instance(db_session, instance_id="act-1")
        db_session.commit()

        first = await client.post("/action/delete", params={"instanceId": "act-1"})
        second = await client.post("/action/delete", params={"instanceId": "act-1"})

        assert first.json() == {"success": True}
        assert second.json() == {"success": False}


class TestNotify:
    """Integration tests for POST /action/notify."""

    @pytest.mark.asyncio
    async def test_notify_enqueues_jobs(self, client: AsyncClient, db_session):
        """Test that each record gets a job or a per-record error."""
        create_tenant(db_session)
        create_action_instance(db_session, instance_id="act-1")
        db_session.commit()

        response = await client.post(
            "/action/notify",
            params={"instanceId": "act-1"},
            json={
                "executionId": "exec-1",
                "items": [
                    {"ContactID": "c1", "C_MobilePhone": "0412345678", "C_FirstName": "Ada", "Code": "1"},
                    {"ContactID": "c2", "C_FirstName": "Nobody"},
                ],
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Queued 1 of 2 records"
        assert data["results"][0]["success"] is True
        assert data["results"][0]["jobId"]
        assert data["results"][1] == {
            "contactId": "c2",
            "success": False,
            "jobId": None,
            "error": "Mobile number not found",
        }

        db_session.expire_all()
        job = db_session.query(SmsJob).one()
        assert job.status == JobStatus.PENDING
        assert job.message == "Hi Ada, your code is 1"
        assert job.execution_id == "exec-1"

    @pytest.mark.asyncio
    async def test_notify_unknown_instance(self, client: AsyncClient):
        response = await client.post(
            "/action/notify", params={"instanceId": "missing"}, json={"items": []}
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_notify_without_credentials(self, client: AsyncClient, db_session):
        """Test that a tenant without gateway credentials is rejected outright."""
        create_tenant(db_session, api_key=None, api_secret=None)
        create_action_instance(db_session, instance_id="act-1")
        db_session.commit()

        response = await client.post(
            "/action/notify",
            params={"instanceId": "act-1"},
            json={"items": [{"ContactID": "c1", "C_MobilePhone": "0412345678"}]},
        )

        assert response.status_code == 400
        db_session.expire_all()
        assert db_session.query(SmsJob).count() == 0


class TestSenderIds:
    """Integration tests for GET /action/sender-ids."""

    @pytest.mark.asyncio
    async def test_sender_ids(self, client: AsyncClient, db_session):
        create_tenant(db_session)
        db_session.commit()

        response = await client.get("/action/sender-ids", params={"installId": "install-1"})

        assert response.status_code == 200
        assert response.json() == {
            "virtual_numbers": ["61400000001"],
            "business_names": ["ACME"],
            "mobile_numbers": [],
        }

    @pytest.mark.asyncio
    async def test_sender_ids_errors(self, client: AsyncClient, db_session):
        create_tenant(db_session, install_id="no-creds", api_key=None, api_secret=None)
        db_session.commit()

        missing = await client.get("/action/sender-ids", params={"installId": "nobody"})
        no_creds = await client.get("/action/sender-ids", params={"installId": "no-creds"})

        assert missing.status_code == 404
        assert no_creds.status_code == 400


class TestJobEndpoints:
    """Integration tests for job stats and cancellation."""

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, db_session):
        create_job(db_session, status=JobStatus.PENDING)
        create_job(db_session, status=JobStatus.PROCESSING)
        create_job(db_session, status=JobStatus.SENT)
        create_job(db_session, install_id="other", status=JobStatus.SENT)
        db_session.commit()

        response = await client.get("/action/jobs/stats", params={"installId": "install-1"})

        data = response.json()
        assert data["pending"] == 1
        assert data["processing"] == 1
        assert data["sent"] == 1
        assert data["in_flight"] == 2
        assert data["total"] == 3

    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient, db_session):
        pending = create_job(db_session, status=JobStatus.PENDING)
        sent = create_job(db_session, status=JobStatus.SENT)
        db_session.commit()

        ok = await client.post(f"/action/jobs/{pending.job_id}/cancel")
        conflict = await client.post(f"/action/jobs/{sent.job_id}/cancel")
        missing = await client.post("/action/jobs/nope/cancel")

        assert ok.status_code == 200
        assert ok.json() == {"job_id": pending.job_id, "status": JobStatus.CANCELLED}
        assert conflict.status_code == 409
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, client: AsyncClient, db_session):
        from datetime import timedelta

        from smsbridge_core.domain.models import utcnow

        now = utcnow()
        older = create_job(db_session, status=JobStatus.SENT, created_at=now - timedelta(minutes=5))
        newer = create_job(db_session, status=JobStatus.PENDING, created_at=now)
        create_job(db_session, install_id="other")
        db_session.commit()

        response = await client.get("/action/jobs", params={"installId": "install-1"})
        pending = await client.get(
            "/action/jobs", params={"installId": "install-1", "status": JobStatus.PENDING}
        )
        limited = await client.get("/action/jobs", params={"installId": "install-1", "limit": 1})

        data = response.json()
        assert data["count"] == 2
        assert [job["job_id"] for job in data["jobs"]] == [newer.job_id, older.job_id]
        assert [job["job_id"] for job in pending.json()["jobs"]] == [newer.job_id]
        assert limited.json()["count"] == 1

    @pytest.mark.asyncio
    async def test_list_jobs_limit_bounds(self, client: AsyncClient):
        response = await client.get("/action/jobs", params={"installId": "install-1", "limit": 0})

        assert response.status_code == 422
