"""Tests for the observability module.

Tests for metrics collection, persistence, tracing and logging setup.
"""
import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from realm_pkm.exceptions import NoteNotFoundError
from realm_pkm.observability import (
    ROOT_LOGGER_NAME,
    MetricsCollector,
    RequestIdFilter,
    configure_logging,
    current_request_id,
    metrics,
    request_id_var,
    timed_operation,
    traced,
)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_collector(self, tmp_path):
        """Create a MetricsCollector with auto-save disabled."""
        return MetricsCollector(
            metrics_file=tmp_path / "metrics.json",
            auto_save_interval=0
        )

    def test_record_successful_operation(self, metrics_collector):
        """A successful operation is counted with its duration."""
        metrics_collector.record_operation("create_note", 100.0, True)

        snapshot = metrics_collector.get_metrics()
        assert snapshot["create_note"]["count"] == 1
        assert snapshot["create_note"]["success_count"] == 1
        assert snapshot["create_note"]["error_count"] == 0
        assert snapshot["create_note"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """A failed operation keeps its last error and when it happened."""
        metrics_collector.record_operation("link_notes", 50.0, False, "duplicate")

        snapshot = metrics_collector.get_metrics()
        assert snapshot["link_notes"]["error_count"] == 1
        assert snapshot["link_notes"]["last_error"] == "duplicate"
        assert snapshot["link_notes"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        """Durations are aggregated into min, max and average."""
        metrics_collector.record_operation("search", 100.0, True)
        metrics_collector.record_operation("search", 200.0, True)
        metrics_collector.record_operation("search", 300.0, False, "Error")

        snapshot = metrics_collector.get_metrics()["search"]
        assert snapshot["count"] == 3
        assert snapshot["avg_duration_ms"] == 200.0
        assert snapshot["min_duration_ms"] == 100.0
        assert snapshot["max_duration_ms"] == 300.0

    def test_save_metrics_writes_json(self, tmp_path):
        """Saved metrics land in the configured file."""
        path = tmp_path / "nested" / "metrics.json"
        collector = MetricsCollector(metrics_file=path, auto_save_interval=0)
        collector.record_operation("op1", 10.0, True)

        assert collector.save_metrics() is True
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["operations"]["op1"]["count"] == 1
        assert collector.get_metrics_file() == path

    def test_auto_save_after_interval(self, tmp_path):
        """Metrics are flushed to disk every N operations."""
        path = tmp_path / "metrics.json"
        collector = MetricsCollector(metrics_file=path, auto_save_interval=2)
        collector.record_operation("op", 1.0, True)
        assert not path.exists()
        collector.record_operation("op", 1.0, True)
        assert path.exists()

    def test_get_summary(self, metrics_collector):
        """The summary totals all operations."""
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_success"] == 1
        assert summary["total_errors"] == 1
        assert set(summary["operations_tracked"]) == {"op1", "op2"}

    def test_reset_metrics(self, metrics_collector):
        metrics_collector.record_operation("op", 1.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTracing:
    """Tests for timed_operation and the traced decorator."""

    def setup_method(self):
        metrics.reset()

    def test_timed_operation_records_success(self):
        with timed_operation("unit_block") as op:
            op["result_count"] = 3
        assert metrics.get_metrics()["unit_block"]["success_count"] == 1

    def test_timed_operation_records_failure_and_reraises(self):
        with pytest.raises(RuntimeError):
            with timed_operation("failing_block"):
                raise RuntimeError("boom")
        recorded = metrics.get_metrics()["failing_block"]
        assert recorded["error_count"] == 1
        assert recorded["last_error"] == "boom"

    def test_traced_uses_given_name(self):
        @traced("custom_name")
        def work(note_id=None):
            return [1, 2]

        assert work(note_id="abc") == [1, 2]
        assert "custom_name" in metrics.get_metrics()

    def test_traced_defaults_to_function_name(self):
        @traced()
        def another_operation():
            return None

        another_operation()
        assert "another_operation" in metrics.get_metrics()


class TestConfigureLogging:
    """Tests for persistent log setup."""

    def test_configure_logging_creates_rotating_file(self, tmp_path):
        root = logging.getLogger(ROOT_LOGGER_NAME)
        before = list(root.handlers)
        try:
            log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)
            assert log_dir == tmp_path / "logs"
            assert log_dir.is_dir()
            assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        finally:
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()


class TestErrorCodesAndRequestIds:
    """Tests for error-code counters and request id propagation."""

    def setup_method(self):
        metrics.reset()

    def test_failures_are_counted_by_error_code(self):
        with pytest.raises(NoteNotFoundError):
            with timed_operation("get_note"):
                raise NoteNotFoundError("n1")
        with pytest.raises(ValueError):
            with timed_operation("get_note"):
                raise ValueError("plain")

        recorded = metrics.get_metrics()["get_note"]
        assert recorded["error_codes"] == {"NOTE_NOT_FOUND": 1, "ValueError": 1}
        assert metrics.get_summary()["total_errors"] == 2

    def test_request_id_filter(self):
        record = logging.LogRecord("realm_pkm.test", logging.INFO, __file__, 1, "msg", None, None)
        RequestIdFilter().filter(record)
        assert record.request_id == "-"

        token = request_id_var.set("req-42")
        try:
            RequestIdFilter().filter(record)
            assert record.request_id == "req-42"
            assert current_request_id() == "req-42"
        finally:
            request_id_var.reset(token)
        assert current_request_id() is None
