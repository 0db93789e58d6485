"""
Prometheus metrics for the squadstats service.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class Metrics:
    """
    Centralized Prometheus metrics, served at /metrics.
    """

    def __init__(self, service_name: str = "squadstats", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=service_name).set(0)

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Pipeline
        self.events_received_total = Counter(
            "squadstats_events_received_total",
            "Events received from game servers",
            ["server", "kind"],
            registry=self.registry,
        )

        self.events_persisted_total = Counter(
            "squadstats_events_persisted_total",
            "Events committed to the database",
            ["kind"],
            registry=self.registry,
        )

        self.events_dead_lettered_total = Counter(
            "squadstats_events_dead_lettered_total",
            "Events written to the dead-letter sink",
            ["kind"],
            registry=self.registry,
        )

        self.flush_duration = Histogram(
            "squadstats_flush_duration_seconds",
            "Time spent flushing one kind buffer",
            ["kind"],
            registry=self.registry,
        )

        self.buffer_size = Gauge(
            "squadstats_buffer_size",
            "Events waiting in a kind buffer",
            ["kind"],
            registry=self.registry,
        )

        self.server_connected = Gauge(
            "squadstats_server_connected",
            "Game server connection state (1=connected)",
            ["server"],
            registry=self.registry,
        )

    def record_event_received(self, server_id: str, kind: str):
        self.events_received_total.labels(server=server_id, kind=kind).inc()

    def record_flush(self, kind: str, persisted: int, dead_lettered: int, duration_s: float, remaining: int):
        """Record the outcome of one flush of ``kind``."""
        if persisted:
            self.events_persisted_total.labels(kind=kind).inc(persisted)
        if dead_lettered:
            self.events_dead_lettered_total.labels(kind=kind).inc(dead_lettered)
        self.flush_duration.labels(kind=kind).observe(duration_s)
        self.buffer_size.labels(kind=kind).set(remaining)

    def set_server_connected(self, server_id: str, connected: bool):
        self.server_connected.labels(server=server_id).set(1 if connected else 0)
