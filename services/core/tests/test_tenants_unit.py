"""Unit tests for the tenant store and tenant snapshot cache."""

import pytest
from sqlalchemy.orm import Session

from smsbridge_core.domain.models import Tenant
from tests.factories import create_tenant


class TestInstall:
    """Tests for install and uninstall."""

    def test_install_creates_tenant(self, db_session: Session):
        """Test that a first install creates an active tenant."""
        from smsbridge_core.domain.services.tenants import TenantService

        tenant = TenantService(db_session).install("inst-a", "111", "Site A")

        assert tenant.id is not None
        assert tenant.is_active is True
        assert tenant.default_country == "Australia"
        assert tenant.site_name == "Site A"

    def test_reinstall_same_site_reuses_tenant(self, db_session: Session):
        """Test that a new install id for a known site updates the tenant."""
        from smsbridge_core.domain.services.tenants import TenantService

        service = TenantService(db_session)
        first = service.install("inst-old", "111")
        service.uninstall("inst-old")

        second = service.install("inst-new", "111")

        assert second.id == first.id
        assert second.install_id == "inst-new"
        assert second.is_active is True
        assert db_session.query(Tenant).count() == 1

    def test_uninstall_soft_deletes(self, db_session: Session):
        """Test that uninstall hides the tenant without deleting it."""
        from smsbridge_core.domain.services.tenants import TenantService

        create_tenant(db_session, install_id="inst-a")
        service = TenantService(db_session)

        assert service.uninstall("inst-a") is True
        assert service.get("inst-a") is None
        assert db_session.query(Tenant).count() == 1
        assert service.uninstall("inst-a") is False

    def test_require_missing_raises(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantNotFoundError, TenantService

        with pytest.raises(TenantNotFoundError):
            TenantService(db_session).require("nope")


class TestSettings:
    """Tests for operator-editable settings."""

    def test_update_settings(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantService

        create_tenant(db_session)
        tenant = TenantService(db_session).update_settings(
            "install-1",
            default_country="New Zealand",
            action_defaults={"sendsms": {"custom_object_id": "7"}},
        )

        assert tenant.default_country == "New Zealand"
        assert TenantService(db_session).action_defaults(tenant, "sendsms") == {"custom_object_id": "7"}

    def test_update_unknown_field_rejected(self, db_session: Session):
        """Test that only editable fields can be changed."""
        from smsbridge_core.domain.services.tenants import TenantService

        create_tenant(db_session)
        with pytest.raises(ValueError, match="Unknown tenant fields"):
            TenantService(db_session).update_settings("install-1", is_active=False)


class TestCredentials:
    """Tests for encrypted gateway credentials and the platform token."""

    def test_credentials_round_trip_encrypted(self, db_session: Session):
        """Test that credentials are stored encrypted and decrypt back."""
        from smsbridge_core.domain.services.tenants import GatewayCredentials, TenantService

        create_tenant(db_session, api_key=None, api_secret=None)
        service = TenantService(db_session)
        tenant = service.set_gateway_credentials("install-1", "key-1", "secret-1")

        assert tenant.gateway_api_key_encrypted != "key-1"
        assert service.get_gateway_credentials(tenant) == GatewayCredentials("key-1", "secret-1")
        assert service.has_gateway_credentials(tenant) is True

    def test_missing_credentials_raise(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import MissingCredentialsError, TenantService

        tenant = create_tenant(db_session, api_key=None, api_secret=None)
        service = TenantService(db_session)

        assert service.has_gateway_credentials(tenant) is False
        with pytest.raises(MissingCredentialsError):
            service.get_gateway_credentials(tenant)

    def test_half_credentials_rejected(self, db_session: Session):
        """Test that a key without a secret is refused."""
        from smsbridge_core.domain.services.tenants import MissingCredentialsError, TenantService

        create_tenant(db_session)
        with pytest.raises(MissingCredentialsError):
            TenantService(db_session).set_gateway_credentials("install-1", "key", "")

    def test_platform_token(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantService

        create_tenant(db_session)
        service = TenantService(db_session)
        tenant = service.set_platform_token("install-1", "oauth-token")

        assert service.get_platform_token(tenant) == "oauth-token"
        service.set_platform_token("install-1", None)
        assert service.get_platform_token(tenant) is None


class TestCallbackUrls:
    """Tests for gateway callback URL resolution."""

    def test_defaults_from_base_url(self, db_session: Session):
        """Test that unset callbacks point at this service's webhooks."""
        from smsbridge_core.domain.services.tenants import TenantService

        tenant = create_tenant(db_session)
        urls = TenantService(db_session).callback_urls(tenant)

        assert urls == {
            "dlr_callback": "https://bridge.test/webhooks/dlr",
            "reply_callback": "https://bridge.test/webhooks/reply",
            "link_hits_callback": "https://bridge.test/webhooks/linkhit",
        }

    def test_http_rewritten_to_https(self, db_session: Session):
        """Test that configured http callbacks are upgraded to https."""
        from smsbridge_core.domain.services.tenants import TenantService

        tenant = create_tenant(db_session, dlr_callback="http://hooks.example.com/dlr")
        urls = TenantService(db_session).callback_urls(tenant, base_url="http://insecure.test/")

        assert urls["dlr_callback"] == "https://hooks.example.com/dlr"
        assert urls["reply_callback"] == "https://insecure.test/webhooks/reply"


class TestTenantCache:
    """Tests for the process-local tenant snapshot cache."""

    def test_snapshot_carries_decrypted_credentials(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantCache

        create_tenant(db_session, platform_token="tok")
        snapshot = TenantCache().get(db_session, "install-1")

        assert snapshot.credentials.api_key == "gw-key"
        assert snapshot.credentials.api_secret == "gw-secret"
        assert snapshot.platform_token == "tok"
        assert snapshot.site_id == "3456789"

    def test_cached_within_ttl(self, db_session: Session):
        """Test that changes are not seen until the TTL elapses."""
        from smsbridge_core.domain.services.tenants import TenantCache, TenantService

        now = [100.0]
        cache = TenantCache(ttl_seconds=60, clock=lambda: now[0])
        create_tenant(db_session)

        first = cache.get(db_session, "install-1")
        TenantService(db_session).update_settings("install-1", default_country="Canada")

        now[0] = 130.0
        assert cache.get(db_session, "install-1") is first

        now[0] = 161.0
        refreshed = cache.get(db_session, "install-1")
        assert refreshed.default_country == "Canada"

    def test_unknown_tenant_not_cached(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantCache

        cache = TenantCache()
        assert cache.get(db_session, "missing") is None

        create_tenant(db_session, install_id="missing")
        assert cache.get(db_session, "missing") is not None

    def test_invalidate(self, db_session: Session):
        from smsbridge_core.domain.services.tenants import TenantCache

        cache = TenantCache(ttl_seconds=3600)
        create_tenant(db_session)
        first = cache.get(db_session, "install-1")

        cache.invalidate("install-1")
        assert cache.get(db_session, "install-1") is not first
