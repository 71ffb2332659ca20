"""Pytest configuration and fixtures for worker tests.

These fixtures enable testing the dispatcher and Celery tasks without
requiring:
- Running Redis/Celery
- A MySQL server
- The SMS gateway or marketing platform
"""

import os
import uuid
from typing import Any, Callable, Generator
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

# Set test environment variables before importing celery_app
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("MYSQL_URL", "sqlite+pysqlite:///:memory:")

from smsbridge_core.domain.models import (  # noqa: E402
    Base,
    DecisionStatus,
    JobStatus,
    SmsJob,
    SmsLog,
    SmsStatus,
    utcnow,
)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Point settings at safe test values and reset process-wide state."""
    from smsbridge_core.config import get_settings
    from smsbridge_core.infrastructure.crypto import CryptoService
    from smsbridge_core.observability.metrics import get_collector

    monkeypatch.setenv("MYSQL_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("ENCRYPTION_KEY", CryptoService.generate_key())
    monkeypatch.setenv("BASE_URL", "https://bridge.test")
    monkeypatch.setenv("LOG_JSON", "false")

    get_settings.cache_clear()
    get_collector().reset()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def mock_celery_app():
    """Celery app configured for eager execution."""
    from smsbridge_worker.celery_app import app

    app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )
    return app


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

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
def session_factory(sync_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=sync_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_job(db_session) -> Callable[..., SmsJob]:
    """Factory for committed SmsJob rows."""

    def factory(**kwargs: Any) -> SmsJob:
        now = utcnow()
        values = {
            "job_id": str(uuid.uuid4()),
            "install_id": "install-1",
            "instance_id": "instance-1",
            "mobile_number": "+61412345678",
            "message": "Hello",
            "status": JobStatus.PENDING,
            "scheduled_at": now,
            "send_options": {},
            "retry_count": 0,
            "max_retries": 3,
            "created_at": now,
            "updated_at": now,
        }
        values.update(kwargs)
        job = SmsJob(**values)
        db_session.add(job)
        db_session.commit()
        return job

    return factory


# -----------------------------------------------------------------------------
# Celery Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_task_request():
    """Create a mock Celery task request object."""
    request = MagicMock()
    request.id = "test-task-id-123"
    request.retries = 0
    return request


@pytest.fixture
def task_db(session_factory):
    """Route the tasks' session_scope() to the test database."""
    from smsbridge_core.infra import db as infra_db

    real_scope = infra_db.session_scope

    def scope(factory=None):
        return real_scope(session_factory)

    with patch.object(infra_db, "session_scope", scope):
        yield session_factory


@pytest.fixture
def make_sms_log(db_session) -> Callable[..., SmsLog]:
    """Factory for committed audit entries."""

    def factory(**kwargs: Any) -> SmsLog:
        now = utcnow()
        values = {
            "install_id": "install-1",
            "instance_id": "instance-1",
            "mobile_number": "+61412345678",
            "message": "Hello",
            "message_id": str(uuid.uuid4().int)[:12],
            "status": SmsStatus.SENT,
            "sent_at": now,
            "created_at": now,
            "updated_at": now,
        }
        values.update(kwargs)
        entry = SmsLog(**values)
        db_session.add(entry)
        db_session.commit()
        return entry

    return factory


@pytest.fixture
def make_pending_decision(make_sms_log) -> Callable[..., SmsLog]:
    def factory(deadline, **kwargs: Any) -> SmsLog:
        return make_sms_log(
            decision_instance_id=kwargs.pop("decision_instance_id", "dec-1"),
            decision_status=DecisionStatus.PENDING,
            decision_deadline=deadline,
            **kwargs,
        )

    return factory
