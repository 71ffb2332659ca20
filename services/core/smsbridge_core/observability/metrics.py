"""In-process metrics for SMS Bridge services.

Counters for the SMS pipeline (sent, failed, retried, webhook
outcomes, feeder rows) and a histogram of gateway send latency.
Values live in memory per process and are exposed at /metrics.
Histograms keep only the most recent HISTOGRAM_WINDOW samples per
series, so their stats describe recent latency.
"""

import threading
from collections import deque
from typing import Any, Optional


# Metric names used across the pipeline
SMS_SENT = "sms_sent_total"
SMS_FAILED = "sms_failed_total"
SMS_RETRIED = "sms_retried_total"
JOBS_ENQUEUED = "jobs_enqueued_total"
JOBS_REAPED = "jobs_reaped_total"
WEBHOOK_DLR = "webhook_dlr_total"
WEBHOOK_REPLY = "webhook_reply_total"
WEBHOOK_LINKHIT = "webhook_linkhit_total"
FEEDER_ROWS = "feeder_rows_total"
GATEWAY_SEND_SECONDS = "gateway_send_seconds"
DISPATCH_IN_FLIGHT = "dispatch_in_flight"

HISTOGRAM_WINDOW = 1000


class MetricsCollector:
    """Thread-safe in-memory metrics store.

    The dispatch worker updates it from its event loop while the
    Celery and API threads read it, hence the lock.
    """

    def __init__(self, histogram_window: int = HISTOGRAM_WINDOW):
        self._lock = threading.RLock()
        self._histogram_window = histogram_window
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}

    def _make_key(self, name: str, labels: Optional[dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Increment a counter metric.

        Args:
            name: Counter name
            value: Value to add (default 1)
            labels: Optional labels
        """
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            samples = self._histograms.get(key)
            if samples is None:
                samples = self._histograms[key] = deque(maxlen=self._histogram_window)
            samples.append(value)

    def get(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Get a counter or gauge value, 0 if never recorded."""
        key = self._make_key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key]
            return self._gauges.get(key, 0)

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> dict[str, float]:
        """Summarise a histogram.

        Returns:
            Dictionary with count, min, max, avg, p50, p95, p99
        """
        key = self._make_key(name, labels)
        return self._stats_for_key(key)

    def _stats_for_key(self, key: str) -> dict[str, float]:
        with self._lock:
            values = list(self._histograms.get(key, ()))

        if not values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0}

        ordered = sorted(values)
        count = len(ordered)
        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p50": ordered[int(count * 0.5)],
            "p95": ordered[min(int(count * 0.95), count - 1)],
            "p99": ordered[min(int(count * 0.99), count - 1)],
        }

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            histogram_keys = list(self._histograms.keys())
            result = {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
        result["histograms"] = {k: self._stats_for_key(k) for k in histogram_keys}
        return result

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global metrics collector instance
_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Get the process-global metrics collector."""
    return _collector
