"""Tests for structured logging, metrics and health checks."""

import asyncio
import json
import logging

from restrooms.db.store import InMemoryLocationStore, StoreError
from restrooms.observability import (
    MetricsCollector,
    StructuredFormatter,
    check_health,
    get_logger,
    request_id_var,
)


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestContextLogger:

    def test_fields_become_record_attributes(self):
        handler = CapturingHandler()
        base = logging.getLogger("restrooms.tests.fields")
        base.addHandler(handler)
        base.setLevel(logging.INFO)
        try:
            get_logger("restrooms.tests.fields").info("Hydration complete", saved=3)
        finally:
            base.removeHandler(handler)

        assert handler.records[0].saved == 3

    def test_reserved_names_are_prefixed(self):
        """A field named like a LogRecord attribute does not clash."""
        handler = CapturingHandler()
        base = logging.getLogger("restrooms.tests.reserved")
        base.addHandler(handler)
        base.setLevel(logging.INFO)
        try:
            get_logger("restrooms.tests.reserved").info("Submitted", name="Cafe")
        finally:
            base.removeHandler(handler)

        record = handler.records[0]
        assert record.field_name == "Cafe"
        assert record.name == "restrooms.tests.reserved"

    def test_json_formatter(self):
        record = logging.LogRecord("restrooms.x", logging.INFO, __file__, 1, "hello", (), None)
        record.location_id = "loc-1"
        token = request_id_var.set("req-1")
        try:
            payload = json.loads(StructuredFormatter().format(record))
        finally:
            request_id_var.reset(token)

        assert payload["message"] == "hello"
        assert payload["location_id"] == "loc-1"
        assert payload["request_id"] == "req-1"


class TestMetricsCollector:

    def test_hydration_counters(self):
        metrics = MetricsCollector()
        metrics.record_hydration(12.0, saved=2, skipped=1, failed=0)
        metrics.record_hydration_disabled()
        metrics.record_remote_error()

        summary = metrics.get_summary()
        assert summary["hydration_runs"] == 1
        assert summary["candidates_saved"] == 2
        assert summary["candidates_skipped"] == 1
        assert summary["hydration_skipped_disabled"] == 1
        assert summary["remote_fetch_errors"] == 1
        assert summary["hydration_latency_p50_ms"] == 12.0

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.record_vote()
        metrics.record_request(5.0, success=False)
        metrics.reset()

        summary = metrics.get_summary()
        assert summary["votes_recorded"] == 0
        assert summary["requests_failed"] == 0
        assert summary["request_latency_p50_ms"] is None


class TestHealth:

    def test_healthy_store(self):
        status = asyncio.run(check_health(store=InMemoryLocationStore()))
        assert status.healthy
        assert status.checks["location_store"]["location_count"] == 0

    def test_failing_store(self):
        class BrokenStore(InMemoryLocationStore):
            async def count(self, source=None):
                raise StoreError("connection refused")

        status = asyncio.run(check_health(store=BrokenStore()))
        assert not status.healthy
        assert status.checks["location_store"]["status"] == "unhealthy"
