"""Tests for metrics and telemetry."""
import time

import pytest
from prometheus_client import generate_latest

from squadstats.metrics.collector import MetricsCollector, EVENTS_DEAD_LETTERED_TOTAL, EVENTS_PERSISTED_TOTAL
from squadstats.metrics.registry import Metrics


def test_counter_increment():
    """Test counter increment functionality."""
    test_collector = MetricsCollector()

    test_collector.increment("test_counter")
    test_collector.increment("test_counter")
    test_collector.increment("test_counter", value=3)

    metrics = test_collector.get_metrics()
    assert metrics["counters"]["test_counter"] == 5


def test_counter_with_labels():
    """Test counter with labels."""
    test_collector = MetricsCollector()

    test_collector.increment(EVENTS_PERSISTED_TOTAL, labels={"kind": "PLAYER_DIED"})
    test_collector.increment(EVENTS_PERSISTED_TOTAL, labels={"kind": "CHAT_MESSAGE"})
    test_collector.increment(EVENTS_PERSISTED_TOTAL, labels={"kind": "PLAYER_DIED"}, value=4)

    metrics = test_collector.get_metrics()
    assert metrics["counters"]["events_persisted_total{kind=PLAYER_DIED}"] == 5
    assert metrics["counters"]["events_persisted_total{kind=CHAT_MESSAGE}"] == 1
    assert test_collector.counter_value(EVENTS_PERSISTED_TOTAL, {"kind": "PLAYER_DIED"}) == 5
    assert test_collector.counter_value(EVENTS_DEAD_LETTERED_TOTAL, {"kind": "PLAYER_DIED"}) == 0


def test_label_order_does_not_matter():
    test_collector = MetricsCollector()

    test_collector.increment("events", labels={"server": "alpha", "kind": "PLAYER_DIED"})
    test_collector.increment("events", labels={"kind": "PLAYER_DIED", "server": "alpha"})

    assert test_collector.get_metrics()["counters"] == {"events{kind=PLAYER_DIED,server=alpha}": 2}


def test_gauge_value():
    test_collector = MetricsCollector()

    test_collector.gauge("buffer_size", 3)
    test_collector.gauge("buffer_size", 7)

    assert test_collector.get_metrics()["gauges"]["buffer_size"] == 7


def test_histogram_stats():
    """Test histogram summary statistics."""
    test_collector = MetricsCollector()

    for value in [10.0, 20.0, 30.0, 40.0]:
        test_collector.histogram("flush_latency_ms", value)

    stats = test_collector.get_metrics()["histograms"]["flush_latency_ms"]
    assert stats["count"] == 4
    assert stats["sum"] == 100.0
    assert stats["avg"] == 25.0
    assert stats["min"] == 10.0
    assert stats["max"] == 40.0


def test_histogram_keeps_recent_window():
    test_collector = MetricsCollector(window=3)

    for value in [1.0, 2.0, 3.0, 100.0]:
        test_collector.histogram("latency", value)

    stats = test_collector.get_metrics()["histograms"]["latency"]
    assert stats["count"] == 3
    assert stats["min"] == 2.0


def test_record_latency():
    test_collector = MetricsCollector()
    start = time.monotonic() - 0.05

    test_collector.record_latency("flush_latency_ms", start, labels={"kind": "PLAYER_DIED"})

    stats = test_collector.get_metrics()["histograms"]["flush_latency_ms{kind=PLAYER_DIED}"]
    assert stats["count"] == 1
    assert stats["min"] >= 50


def test_reset():
    test_collector = MetricsCollector()
    test_collector.increment("counter")
    test_collector.gauge("gauge", 1)
    test_collector.histogram("histogram", 1.0)

    test_collector.reset()

    metrics = test_collector.get_metrics()
    assert metrics["counters"] == {}
    assert metrics["gauges"] == {}
    assert metrics["histograms"] == {}


def test_uptime_tracking():
    test_collector = MetricsCollector()
    time.sleep(0.01)
    assert test_collector.get_metrics()["uptime_seconds"] > 0


def test_prometheus_flush_metrics():
    """Test that flush outcomes land in the Prometheus registry."""
    metrics = Metrics(version="test")

    metrics.record_flush("PLAYER_DIED", persisted=5, dead_lettered=2, duration_s=0.25, remaining=1)
    metrics.record_event_received("alpha", "PLAYER_DIED")
    metrics.set_server_connected("alpha", True)

    registry = metrics.registry
    assert registry.get_sample_value("squadstats_events_persisted_total", {"kind": "PLAYER_DIED"}) == 5
    assert registry.get_sample_value("squadstats_events_dead_lettered_total", {"kind": "PLAYER_DIED"}) == 2
    assert registry.get_sample_value("squadstats_flush_duration_seconds_count", {"kind": "PLAYER_DIED"}) == 1
    assert registry.get_sample_value("squadstats_buffer_size", {"kind": "PLAYER_DIED"}) == 1
    assert registry.get_sample_value(
        "squadstats_events_received_total", {"server": "alpha", "kind": "PLAYER_DIED"}
    ) == 1
    assert registry.get_sample_value("squadstats_server_connected", {"server": "alpha"}) == 1


def test_prometheus_registries_are_independent():
    first = Metrics(version="test")
    second = Metrics(version="test")

    first.record_event_received("alpha", "CHAT_MESSAGE")

    assert second.registry.get_sample_value(
        "squadstats_events_received_total", {"server": "alpha", "kind": "CHAT_MESSAGE"}
    ) is None
    assert b"app_up" in generate_latest(first.registry)


@pytest.mark.parametrize("connected,expected", [(True, 1), (False, 0)])
def test_server_connected_gauge(connected, expected):
    metrics = Metrics(version="test")
    metrics.set_server_connected("bravo", connected)
    assert metrics.registry.get_sample_value("squadstats_server_connected", {"server": "bravo"}) == expected
