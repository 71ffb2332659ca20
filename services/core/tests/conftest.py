"""Pytest configuration and fixtures for SMS Bridge Core tests.

This module provides fixtures for:
- Database: SQLite in-memory engine shared by the test and the app
- HTTP client: AsyncClient for FastAPI testing
- Fakes: an in-memory SMS gateway and platform client
"""

from collections.abc import AsyncGenerator, Generator
from typing import Any, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from smsbridge_core.domain.models import Base
from smsbridge_core.providers.base import (
    AccountBalance,
    GatewayError,
    SenderIds,
    SmsSendOptions,
    SmsSendResult,
)


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Point settings at safe test values and reset the settings cache."""
    from smsbridge_core.config import get_settings
    from smsbridge_core.domain.services.template import get_template_compiler
    from smsbridge_core.infrastructure.crypto import CryptoService
    from smsbridge_core.observability.metrics import get_collector

    monkeypatch.setenv("MYSQL_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("ENCRYPTION_KEY", CryptoService.generate_key())
    monkeypatch.setenv("BASE_URL", "https://bridge.test")
    monkeypatch.setenv("LOG_JSON", "false")

    get_settings.cache_clear()
    get_collector().reset()
    get_template_compiler().clear()
    yield get_settings()
    get_settings.cache_clear()


# -----------------------------------------------------------------------------
# Synchronous Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # SQLite only autoincrements INTEGER PRIMARY KEY
    from sqlalchemy.dialects import sqlite
    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"

    Base.metadata.create_all(bind=engine)

    sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# -----------------------------------------------------------------------------
# Fake Providers
# -----------------------------------------------------------------------------


class FakeGateway:
    """In-memory SmsGateway that records sends.

    Set ``error`` to make the next sends raise. Message ids count up
    from 1001.
    """

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.error: Optional[GatewayError] = None
        self.tracked_link_short_url: Optional[str] = None
        self.forwarded: list[tuple[str, str]] = []
        self.balance_error: Optional[GatewayError] = None
        self._next_id = 1000

    async def send_sms(
        self,
        to: str,
        message: str,
        options: Optional[SmsSendOptions] = None,
    ) -> SmsSendResult:
        if self.error is not None:
            raise self.error
        self._next_id += 1
        self.sent.append({"to": to, "message": message, "options": options})
        return SmsSendResult(
            message_id=str(self._next_id),
            raw={"message_id": self._next_id, "recipients": 1},
            tracked_link_short_url=self.tracked_link_short_url,
            tracked_link_original_url=options.tracked_link_url if options else None,
        )

    async def get_sender_ids(self) -> SenderIds:
        return SenderIds(virtual_numbers=["61400000001"], business_names=["ACME"])

    async def configure_number_forwarding(self, number: str, forward_url: str) -> dict[str, Any]:
        self.forwarded.append((number, forward_url))
        return {"success": True}

    async def get_balance(self) -> AccountBalance:
        if self.balance_error is not None:
            raise self.balance_error
        return AccountBalance(balance=42.5, currency="AUD")

    async def validate_credentials(self) -> bool:
        try:
            await self.get_balance()
        except GatewayError:
            return False
        return True


class FakePlatform:
    """In-memory platform client that records custom object writes."""

    def __init__(self, fail: bool = False, fail_updates: bool = False):
        self.records: list[tuple[str, list[dict[str, Any]]]] = []
        self.instance_updates: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail
        self.fail_updates = fail_updates

    async def create_custom_object_record(
        self,
        custom_object_id: str,
        field_values: list[dict[str, Any]],
    ) -> dict[str, Any]:
        from smsbridge_core.providers.eloqua.client import PlatformError

        if self.fail:
            raise PlatformError("platform unavailable", status_code=503)
        self.records.append((custom_object_id, field_values))
        return {"id": str(len(self.records))}

    async def update_action_instance(self, instance_id: str, body: dict[str, Any]) -> dict[str, Any]:
        self.instance_updates.append((instance_id, body))
        return body

    async def update_decision_instance(self, instance_id: str, body: dict[str, Any]) -> dict[str, Any]:
        from smsbridge_core.providers.eloqua.client import PlatformError

        if self.fail_updates:
            raise PlatformError("instance update rejected", status_code=400)
        self.instance_updates.append((instance_id, body))
        return body

    async def update_feeder_instance(self, instance_id: str, body: dict[str, Any]) -> dict[str, Any]:
        self.instance_updates.append((instance_id, body))
        return body


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


# -----------------------------------------------------------------------------
# FastAPI Test Client Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def test_app(sync_session_factory, fake_gateway, fake_platform) -> Generator[FastAPI, None, None]:
    """Create a FastAPI test application with DB and provider overrides."""
    from smsbridge_core.api.deps import get_db, get_gateway_factory, get_platform_factory
    from smsbridge_core.main import app

    def override_get_db():
        session = sync_session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_factory] = lambda: (lambda credentials: fake_gateway)
    app.dependency_overrides[get_platform_factory] = lambda: (lambda tenant, token: fake_platform)

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing FastAPI endpoints.

    Note: The db_session fixture is included to ensure the test database
    is set up before the client is created.
    """
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac
