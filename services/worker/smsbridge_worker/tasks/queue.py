"""Job queue maintenance tasks."""

from datetime import datetime, timezone
from typing import Any

from smsbridge_worker.celery_app import app


def _now_utc() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


@app.task(name="queue.reap_stuck_jobs", bind=True, max_retries=3)
def reap_stuck_jobs(self) -> dict[str, Any]:
    """Fail jobs whose worker lease has expired.

    Reaped jobs go back to pending with back-off, or to failed once
    their retries are used up.
    """
    from smsbridge_core.config import get_settings
    from smsbridge_core.domain.services.jobs import JobService
    from smsbridge_core.infra.db import session_scope

    started_at = _now_utc()
    settings = get_settings()

    try:
        with session_scope() as session:
            service = JobService(session, backoff_seconds=settings.retry_backoff_seconds)
            reaped = service.reap(lease_seconds=settings.dispatch_lease_seconds)
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (self.request.retries + 1))
        return {
            "status": "failed",
            "error": str(exc),
            "started_at": started_at.isoformat(),
        }

    return {
        "status": "success",
        "reaped": reaped,
        "started_at": started_at.isoformat(),
        "completed_at": _now_utc().isoformat(),
    }


@app.task(name="queue.cleanup_finished_jobs", bind=True, max_retries=3)
def cleanup_finished_jobs(self, retention_days: int = 0) -> dict[str, Any]:
    """Delete sent, failed and cancelled jobs older than the retention window.

    Args:
        retention_days: Days to keep; 0 uses the configured default.
    """
    from smsbridge_core.config import get_settings
    from smsbridge_core.domain.services.jobs import JobService
    from smsbridge_core.infra.db import session_scope

    started_at = _now_utc()
    retention_days = retention_days or get_settings().job_retention_days

    try:
        with session_scope() as session:
            deleted = JobService(session).cleanup_finished(older_than_days=retention_days)
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))
        return {
            "status": "failed",
            "error": str(exc),
            "retention_days": retention_days,
            "started_at": started_at.isoformat(),
        }

    completed_at = _now_utc()
    return {
        "status": "success",
        "jobs_deleted": deleted,
        "retention_days": retention_days,
        "started_at": started_at.isoformat(),
        "completed_at": completed_at.isoformat(),
        "duration_seconds": int((completed_at - started_at).total_seconds()),
    }
