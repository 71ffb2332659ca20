"""Decision window tasks."""

from datetime import datetime, timezone
from typing import Any

from smsbridge_worker.celery_app import app


@app.task(name="decisions.expire_pending", bind=True, max_retries=3)
def expire_pending(self, batch_size: int = 100) -> dict[str, Any]:
    """Mark pending decisions whose reply window has closed as "no"."""
    from smsbridge_core.domain.services.decisions import DecisionService
    from smsbridge_core.infra.db import session_scope

    started_at = datetime.now(timezone.utc)

    try:
        with session_scope() as session:
            expired = DecisionService(session).expire_pending(batch_size=batch_size)
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))
        return {"status": "failed", "error": str(exc), "started_at": started_at.isoformat()}

    return {
        "status": "success",
        "expired": expired,
        "started_at": started_at.isoformat(),
    }
