"""Tests for the metrics collector and turn-scoped log context."""

from __future__ import annotations

import structlog

from contextlinc.infrastructure.observability.logging import (
    MetricsCollector, add_service_context, bind_turn_context, clear_turn_context
)


class TestMetricsCollector:
    """Latency, counters and gauges."""

    def test_latency_summary(self):
        collector = MetricsCollector()
        collector.record_latency("assembly", 10.0)
        collector.record_latency("assembly", 30.0)

        summary = collector.get_metrics_summary()["latency.assembly"]

        assert summary == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}

    def test_counters_and_gauges(self):
        collector = MetricsCollector()
        collector.increment_counter("builders.degraded")
        collector.increment_counter("builders.degraded", 2)
        collector.set_gauge("context.total_tokens", 412)

        summary = collector.get_metrics_summary()

        assert summary["builders.degraded"] == 3
        assert summary["context.total_tokens"] == 412


class TestTurnContext:
    """Identifiers bound for the in-flight turn."""

    def test_bound_ids_added_to_entries(self):
        bind_turn_context("turn-1", "user-1", "session-1")
        try:
            event = add_service_context(None, "info", {"event": "assembled"})
        finally:
            clear_turn_context()

        assert event["turn_id"] == "turn-1"
        assert event["session_id"] == "session-1"
        assert "timestamp" in event

    def test_cleared_after_turn(self):
        bind_turn_context("turn-1", "user-1", "session-1")
        clear_turn_context()

        assert "turn_id" not in structlog.contextvars.get_contextvars()
        assert "turn_id" not in add_service_context(None, "info", {"event": "idle"})
