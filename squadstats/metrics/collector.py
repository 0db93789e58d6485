"""In-process pipeline counters, exposed as JSON at /v1/metrics."""
import time
from collections import defaultdict, deque
from typing import Deque, Dict
import structlog

log = structlog.get_logger()


class MetricsCollector:
    """
    Collects pipeline counters and latencies.

    Tracks:
    - Events buffered / persisted / failed / dead-lettered per kind
    - Flush latency per kind
    - Server connection state changes

    Histograms keep only the most recent ``window`` samples.
    """

    def __init__(self, window: int = 1000):
        self._window = window
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self._window))
        self._start_time = time.time()

    def increment(self, metric: str, value: int = 1, labels: Dict[str, str] | None = None):
        """
        Increment a counter metric.

        Args:
            metric: Metric name
            value: Amount to increment by
            labels: Optional labels for the metric
        """
        self._counters[self._make_key(metric, labels)] += value

    def gauge(self, metric: str, value: float, labels: Dict[str, str] | None = None):
        self._gauges[self._make_key(metric, labels)] = value

    def histogram(self, metric: str, value: float, labels: Dict[str, str] | None = None):
        self._histograms[self._make_key(metric, labels)].append(value)

    def record_latency(self, metric: str, start_time: float, labels: Dict[str, str] | None = None):
        """Record milliseconds elapsed since ``start_time`` (a time.monotonic() value)."""
        self.histogram(metric, (time.monotonic() - start_time) * 1000, labels)

    def counter_value(self, metric: str, labels: Dict[str, str] | None = None) -> int:
        return self._counters.get(self._make_key(metric, labels), 0)

    def get_metrics(self) -> Dict:
        """
        Get all collected metrics.

        Returns:
            Dictionary with uptime, counters, gauges and histogram summaries
        """
        histogram_stats = {}
        for key, values in self._histograms.items():
            if values:
                histogram_stats[key] = {
                    "count": len(values),
                    "sum": sum(values),
                    "avg": sum(values) / len(values),
                    "min": min(values),
                    "max": max(values),
                }

        return {
            "uptime_seconds": time.time() - self._start_time,
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histogram_stats,
        }

    def reset(self):
        """Reset all metrics (useful for testing)."""
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()
        self._start_time = time.time()
        log.info("metrics.reset")

    @staticmethod
    def _make_key(metric: str, labels: Dict[str, str] | None) -> str:
        if not labels:
            return metric
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{metric}{{{label_str}}}"


# Global metrics collector instance
collector = MetricsCollector()


# Metric names
EVENTS_RECEIVED_TOTAL = "events_received_total"
EVENTS_BUFFERED_TOTAL = "events_buffered_total"
EVENTS_PERSISTED_TOTAL = "events_persisted_total"
EVENTS_FAILED_TOTAL = "events_failed_total"
EVENTS_RETRIED_TOTAL = "events_retried_total"
EVENTS_DEAD_LETTERED_TOTAL = "events_dead_lettered_total"
FLUSH_LATENCY_MS = "flush_latency_ms"
SERVER_STATE_CHANGES_TOTAL = "server_state_changes_total"
