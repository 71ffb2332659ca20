"""Tenant store.

A tenant is one install of the integration for a customer account,
keyed by the platform's install id. It carries the gateway credentials
(encrypted), the platform access token maintained by the OAuth
collaborator, the default country for local phone numbers, the three
gateway callback base URLs and per-action custom object defaults.

The dispatch worker reads tenants on every job, so it goes through
TenantCache, a short-TTL snapshot cache.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from smsbridge_core.config import get_settings
from smsbridge_core.domain.models import Tenant, utcnow
from smsbridge_core.infrastructure.crypto import CryptoService, get_crypto_service
from smsbridge_core.observability.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class TenantError(Exception):
    """Base exception for tenant operations."""
    pass


class TenantNotFoundError(TenantError):
    """Raised when no active tenant exists for an install id."""
    pass


class MissingCredentialsError(TenantError):
    """Raised when the tenant has not configured gateway credentials."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================


# Fields operators may change from the settings page
EDITABLE_FIELDS = {
    "site_name",
    "default_country",
    "dlr_callback",
    "reply_callback",
    "link_hits_callback",
    "action_defaults",
}

CALLBACK_PATHS = {
    "dlr_callback": "/webhooks/dlr",
    "reply_callback": "/webhooks/reply",
    "link_hits_callback": "/webhooks/linkhit",
}


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class GatewayCredentials:
    """Decrypted gateway API key pair."""

    api_key: str
    api_secret: str


@dataclass
class TenantSnapshot:
    """Read-only copy of a tenant, safe to share across sessions."""

    install_id: str
    site_id: str
    default_country: str
    callbacks: dict[str, str]
    credentials: Optional[GatewayCredentials] = None
    platform_token: Optional[str] = None
    action_defaults: dict[str, Any] = field(default_factory=dict)


def to_https(url: Optional[str]) -> Optional[str]:
    """Rewrite an http: URL to https:, leaving anything else alone."""
    if url and url.lower().startswith("http:"):
        return "https:" + url[5:]
    return url


# =============================================================================
# SERVICE
# =============================================================================


class TenantService:
    """Service for tenant lifecycle and credential access."""

    def __init__(self, db: Session, crypto: Optional[CryptoService] = None):
        """Initialize the tenant service.

        Args:
            db: SQLAlchemy database session.
            crypto: Crypto service for secrets; built from settings on
                first use when omitted.
        """
        self.db = db
        self._crypto = crypto

    @property
    def crypto(self) -> CryptoService:
        if self._crypto is None:
            self._crypto = get_crypto_service()
        return self._crypto

    def install(
        self,
        install_id: str,
        site_id: str,
        site_name: Optional[str] = None,
    ) -> Tenant:
        """Create or reactivate a tenant.

        The platform may issue a new install id when a site reinstalls,
        so an existing tenant for the same site is reused and its
        install id updated.
        """
        tenant = self.db.query(Tenant).filter(Tenant.install_id == install_id).first()
        if tenant is None:
            tenant = (
                self.db.query(Tenant)
                .filter(Tenant.site_id == site_id)
                .order_by(Tenant.updated_at.desc())
                .first()
            )

        now = utcnow()
        if tenant is None:
            tenant = Tenant(
                install_id=install_id,
                site_id=site_id,
                site_name=site_name,
                installed_at=now,
            )
            self.db.add(tenant)
            logger.info("tenant.installed", install_id=install_id, site_id=site_id)
        else:
            if tenant.install_id != install_id:
                logger.info(
                    "tenant.install_id_changed",
                    old_install_id=tenant.install_id,
                    install_id=install_id,
                    site_id=site_id,
                )
            tenant.install_id = install_id
            tenant.site_id = site_id
            if site_name:
                tenant.site_name = site_name
            tenant.is_active = True
            tenant.installed_at = now
            tenant.uninstalled_at = None

        self.db.flush()
        return tenant

    def uninstall(self, install_id: str) -> bool:
        """Soft-delete a tenant. Returns False if it was not active."""
        tenant = self.get(install_id)
        if tenant is None:
            return False
        tenant.is_active = False
        tenant.uninstalled_at = utcnow()
        self.db.flush()
        logger.info("tenant.uninstalled", install_id=install_id)
        return True

    def get(self, install_id: str) -> Optional[Tenant]:
        return (
            self.db.query(Tenant)
            .filter(Tenant.install_id == install_id, Tenant.is_active.is_(True))
            .first()
        )

    def require(self, install_id: str) -> Tenant:
        """Get an active tenant or raise TenantNotFoundError."""
        tenant = self.get(install_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {install_id} not found")
        return tenant

    def update_settings(self, install_id: str, **fields: Any) -> Tenant:
        """Update operator-editable tenant settings.

        Raises:
            ValueError: If an unknown field is given.
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown tenant fields: {sorted(unknown)}")

        tenant = self.require(install_id)
        for name, value in fields.items():
            setattr(tenant, name, value)
        self.db.flush()
        return tenant

    def set_gateway_credentials(self, install_id: str, api_key: str, api_secret: str) -> Tenant:
        if not api_key or not api_secret:
            raise MissingCredentialsError("Both API key and secret are required")

        tenant = self.require(install_id)
        tenant.gateway_api_key_encrypted = self.crypto.encrypt(api_key)
        tenant.gateway_api_secret_encrypted = self.crypto.encrypt(api_secret)
        self.db.flush()
        return tenant

    def get_gateway_credentials(self, tenant: Tenant) -> GatewayCredentials:
        """Decrypt the tenant's gateway credentials.

        Raises:
            MissingCredentialsError: If either half is not configured.
        """
        if not tenant.gateway_api_key_encrypted or not tenant.gateway_api_secret_encrypted:
            raise MissingCredentialsError("TransmitSMS API not configured")
        return GatewayCredentials(
            api_key=self.crypto.decrypt(tenant.gateway_api_key_encrypted),
            api_secret=self.crypto.decrypt(tenant.gateway_api_secret_encrypted),
        )

    def has_gateway_credentials(self, tenant: Tenant) -> bool:
        return bool(tenant.gateway_api_key_encrypted and tenant.gateway_api_secret_encrypted)

    def set_platform_token(self, install_id: str, token: Optional[str]) -> Tenant:
        tenant = self.require(install_id)
        tenant.platform_token_encrypted = self.crypto.encrypt_optional(token)
        self.db.flush()
        return tenant

    def get_platform_token(self, tenant: Tenant) -> Optional[str]:
        return self.crypto.decrypt_optional(tenant.platform_token_encrypted)

    def callback_urls(self, tenant: Tenant, base_url: Optional[str] = None) -> dict[str, str]:
        """Gateway callback base URLs for a tenant, always https.

        Tenant-configured URLs win; otherwise this service's own webhook
        routes under base_url are used.
        """
        base = (base_url or get_settings().base_url).rstrip("/")
        urls = {}
        for name, path in CALLBACK_PATHS.items():
            urls[name] = to_https(getattr(tenant, name) or f"{base}{path}")
        return urls

    def action_defaults(self, tenant: Tenant, action: str) -> dict[str, Any]:
        """Custom object defaults for one action (sendsms, receivesms, ...)."""
        return dict((tenant.action_defaults or {}).get(action) or {})

    def snapshot(self, tenant: Tenant) -> TenantSnapshot:
        credentials = None
        if self.has_gateway_credentials(tenant):
            credentials = self.get_gateway_credentials(tenant)
        return TenantSnapshot(
            install_id=tenant.install_id,
            site_id=tenant.site_id,
            default_country=tenant.default_country,
            callbacks=self.callback_urls(tenant),
            credentials=credentials,
            platform_token=self.get_platform_token(tenant),
            action_defaults=dict(tenant.action_defaults or {}),
        )


# =============================================================================
# CACHE
# =============================================================================


class TenantCache:
    """Process-local TTL cache of tenant snapshots."""

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, TenantSnapshot]] = {}
        self._lock = threading.Lock()

    def get(self, db: Session, install_id: str) -> Optional[TenantSnapshot]:
        """Return a fresh-enough snapshot, loading it through db if needed."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(install_id)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                return entry[1]

        service = TenantService(db)
        tenant = service.get(install_id)
        if tenant is None:
            self.invalidate(install_id)
            return None

        snapshot = service.snapshot(tenant)
        with self._lock:
            self._entries[install_id] = (now, snapshot)
        return snapshot

    def invalidate(self, install_id: Optional[str] = None) -> None:
        with self._lock:
            if install_id is None:
                self._entries.clear()
            else:
                self._entries.pop(install_id, None)


__all__ = [
    "GatewayCredentials",
    "MissingCredentialsError",
    "TenantCache",
    "TenantError",
    "TenantNotFoundError",
    "TenantService",
    "TenantSnapshot",
    "to_https",
]
