"""Metrics API routes for observability."""

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Query

from smsbridge_core.api.deps import DBSession
from smsbridge_core.domain.services.jobs import JobService
from smsbridge_core.observability.metrics import get_collector

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def get_metrics(
    db: DBSession,
    install_id: Optional[str] = Query(None, alias="installId"),
) -> dict[str, Any]:
    """Get all metrics.

    Returns in-process counters and histograms plus current queue depth.
    """
    return {
        "collected_at": datetime.now(timezone.utc).isoformat(),
        "application": get_collector().get_all(),
        "queue": JobService(db).stats(install_id=install_id),
    }
