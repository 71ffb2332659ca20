"""Observability package for logging and metrics."""

from smsbridge_core.observability.logging import (
    JsonFormatter,
    SmsContext,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from smsbridge_core.observability.metrics import (
    MetricsCollector,
    get_collector,
)

__all__ = [
    "JsonFormatter",
    "SmsContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "MetricsCollector",
    "get_collector",
]
