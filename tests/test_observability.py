"""Tests for the observability module.

Tests for metrics collection, logging configuration, tracing and error
sanitization.
"""
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import pytest

from northstar_sync.models.schema import SyncResult
from northstar_sync.observability import (
    ROOT_LOGGER_NAME,
    MetricsCollector,
    _sanitize_error_message,
    configure_logging,
    timed_operation,
    traced,
)


class TestErrorMessageSanitization:
    """Tests for error message sanitization."""

    def test_sanitize_none_returns_none(self):
        """Sanitizing None should return None."""
        assert _sanitize_error_message(None) is None

    def test_sanitize_removes_home_directory(self):
        """Home directory paths should be replaced with ~."""
        home = str(Path.home())
        result = _sanitize_error_message(f"{home}/.northstar/db/northstar.db is locked")
        assert home not in result
        assert result.startswith("~")

    def test_sanitize_flattens_newlines(self):
        """Newlines should be replaced with a single space."""
        assert _sanitize_error_message("HTTP 503\r\nService Unavailable") == (
            "HTTP 503 Service Unavailable"
        )

    def test_sanitize_truncates_long_messages(self):
        """Long messages should be truncated with an ellipsis."""
        result = _sanitize_error_message("x" * 300)
        assert len(result) == 200
        assert result.endswith("...")


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_collector(self, tmp_path):
        """Create a MetricsCollector with auto-save disabled."""
        return MetricsCollector(metrics_file=tmp_path / "metrics.json", auto_save_interval=0)

    def test_record_operations(self, metrics_collector):
        """Successes and failures are aggregated per operation."""
        metrics_collector.record_operation("sync_cycle", 100.0, True)
        metrics_collector.record_operation("sync_cycle", 300.0, False, "Network is unreachable")

        data = metrics_collector.get_metrics()["sync_cycle"]
        assert data["count"] == 2
        assert data["success_count"] == 1
        assert data["error_count"] == 1
        assert data["avg_duration_ms"] == 200.0
        assert data["min_duration_ms"] == 100.0
        assert data["last_error"] == "Network is unreachable"

    def test_summary(self, metrics_collector):
        """The summary covers every tracked operation."""
        metrics_collector.record_operation("create_entity", 5.0, True)
        metrics_collector.record_operation("sync_cycle", 50.0, False, "offline")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"create_entity", "sync_cycle"}

    def test_empty_summary_is_healthy(self, metrics_collector):
        """No operations means a success rate of 1."""
        assert metrics_collector.get_summary()["overall_success_rate"] == 1.0

    def test_save_and_load(self, tmp_path):
        """Metrics survive a restart through the metrics file."""
        metrics_file = tmp_path / "metrics.json"
        first = MetricsCollector(metrics_file=metrics_file, auto_save_interval=0)
        first.record_operation("restore", 12.0, True)
        assert first.save_metrics()
        assert "restore" in json.loads(metrics_file.read_text())["operations"]

        second = MetricsCollector(metrics_file=metrics_file, auto_save_interval=0)
        assert second.get_metrics()["restore"]["count"] == 1

    def test_auto_save(self, tmp_path):
        """Metrics are written after every N operations."""
        metrics_file = tmp_path / "metrics.json"
        collector = MetricsCollector(metrics_file=metrics_file, auto_save_interval=2)
        collector.record_operation("create_entity", 1.0, True)
        assert not metrics_file.exists()
        collector.record_operation("create_entity", 1.0, True)
        assert metrics_file.exists()

    def test_corrupt_file_is_ignored(self, tmp_path):
        """An unreadable metrics file does not prevent startup."""
        metrics_file = tmp_path / "metrics.json"
        metrics_file.write_text("{not json")
        collector = MetricsCollector(metrics_file=metrics_file, auto_save_interval=0)
        assert collector.get_metrics() == {}

    def test_reset(self, metrics_collector):
        """Reset drops every recorded operation."""
        metrics_collector.record_operation("sync_cycle", 1.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}
        assert metrics_collector.get_sync_metrics()["cycles"] == 0


class TestSyncCycleMetrics:
    """Tests for the sync cycle totals."""

    @pytest.fixture
    def collector(self, tmp_path):
        return MetricsCollector(metrics_file=tmp_path / "metrics.json", auto_save_interval=0)

    def test_cycles_accumulate(self, collector):
        """Counters of consecutive cycles are summed."""
        collector.record_sync_cycle(SyncResult(pushed=3, pulled=2, applied=2), 40.0)
        collector.record_sync_cycle(
            SyncResult(pushed=1, rejected=1, conflicts=1, held=1, seeded=5), 60.0
        )

        totals = collector.get_sync_metrics()
        assert totals["cycles"] == 2
        assert totals["failed_cycles"] == 0
        assert totals["pushed"] == 4
        assert totals["rejected"] == 1
        assert totals["pulled"] == 2
        assert totals["applied"] == 2
        assert totals["conflicts"] == 1
        assert totals["held"] == 1
        assert totals["seeded"] == 5
        assert totals["last_cycle_ms"] == 60.0
        assert totals["last_cycle_at"] is not None
        assert collector.get_metrics()["sync_cycle"]["count"] == 2

    def test_failed_cycle(self, collector):
        """A cycle ending in backoff counts as failed and keeps its error."""
        collector.record_sync_cycle(SyncResult(error="Network is unreachable"), 5.0)

        totals = collector.get_sync_metrics()
        assert totals["failed_cycles"] == 1
        assert totals["last_error"] == "Network is unreachable"
        assert collector.get_metrics()["sync_cycle"]["error_count"] == 1
        assert collector.get_summary()["sync"]["failed_cycles"] == 1

    def test_totals_survive_restart(self, tmp_path):
        """Sync totals are saved with the operation metrics."""
        metrics_file = tmp_path / "metrics.json"
        first = MetricsCollector(metrics_file=metrics_file, auto_save_interval=0)
        first.record_sync_cycle(SyncResult(pushed=2, pulled=7), 12.5)
        assert first.save_metrics()
        assert json.loads(metrics_file.read_text())["sync"]["pulled"] == 7

        second = MetricsCollector(metrics_file=metrics_file, auto_save_interval=0)
        totals = second.get_sync_metrics()
        assert totals["cycles"] == 1
        assert totals["pushed"] == 2
        assert totals["last_cycle_ms"] == 12.5

    def test_engine_feeds_totals(self, engine, service, fake_remote):
        """Each engine cycle lands in the shared collector."""
        from northstar_sync.observability import metrics

        service.create_group("Work")
        engine.run_cycle()
        fake_remote.online = False
        engine.run_cycle()

        totals = metrics.get_sync_metrics()
        assert totals["cycles"] == 2
        assert totals["pushed"] == 1
        assert totals["failed_cycles"] == 1


class TestTracing:
    """Tests for timed_operation and traced."""

    def test_timed_operation_records_failure(self, tmp_path):
        """Exceptions are recorded and re-raised."""
        collector = MetricsCollector(metrics_file=tmp_path / "m.json", auto_save_interval=0)
        with patch("northstar_sync.observability.metrics", collector):
            with pytest.raises(RuntimeError):
                with timed_operation("sync_cycle", owner="owner-1"):
                    raise RuntimeError("remote exploded")

        data = collector.get_metrics()["sync_cycle"]
        assert data["error_count"] == 1
        assert "remote exploded" in data["last_error"]

    def test_traced_uses_given_name(self, tmp_path):
        """The decorator records under the given operation name."""
        collector = MetricsCollector(metrics_file=tmp_path / "m.json", auto_save_interval=0)

        @traced("create_entity")
        def create(table, fields):
            return 42

        with patch("northstar_sync.observability.metrics", collector):
            assert create("notes", {"title": "x"}) == 42

        assert collector.get_metrics()["create_entity"]["success_count"] == 1

    def test_traced_defaults_to_function_name(self, tmp_path):
        """Without a name the function name is used."""
        collector = MetricsCollector(metrics_file=tmp_path / "m.json", auto_save_interval=0)

        @traced()
        def list_history(local_id):
            return []

        with patch("northstar_sync.observability.metrics", collector):
            list_history(local_id=3)

        assert "list_history" in collector.get_metrics()


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging(self, tmp_path):
        """Logging writes to a rotating file under the given directory."""
        root = logging.getLogger(ROOT_LOGGER_NAME)
        handlers_before = list(root.handlers)
        try:
            log_dir = configure_logging(log_dir=tmp_path / "logs", console=False)
            assert log_dir == tmp_path / "logs"
            assert log_dir.is_dir()
            assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
            configure_logging(log_dir=tmp_path / "logs", console=False)
            file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
            assert len(file_handlers) == 1
            logging.getLogger("northstar_sync.sync.engine").info("cycle done")
            for handler in root.handlers:
                handler.flush()
            assert (log_dir / "northstar.log").exists()
        finally:
            for handler in list(root.handlers):
                if handler not in handlers_before:
                    root.removeHandler(handler)
                    handler.close()
