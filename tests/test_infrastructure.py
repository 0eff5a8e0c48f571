# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError
from asyncpg.exceptions import PostgresError, SerializationError

from dispatch_engine.config import Settings, validate_or_warn, warn_on_risky_config
from dispatch_engine.infra.db_async import get_pool, pool_status
from dispatch_engine.infra.db_resilience_async import is_transient_error, retry_on_transient_error
from dispatch_engine.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext
from dispatch_engine.infra.metrics import DispatchMetrics, MetricsCollector, get_metrics_collector
from dispatch_engine.infra.migrations_async import (
    MIGRATION_LOCK_ID,
    apply_migrations,
    checksum,
    migration_files,
)


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        exc = PostgresError("connection timeout")
        assert is_transient_error(exc) is True

    def test_is_transient_error_server_closed(self):
        exc = PostgresError("server closed the connection unexpectedly")
        assert is_transient_error(exc) is True

    def test_is_transient_error_non_transient(self):
        exc = ValueError("some other error")
        assert is_transient_error(exc) is False

    def test_message_match_only_for_driver_errors(self):
        assert is_transient_error(ValueError("connection timeout")) is False

    def test_serialization_failure_is_transient(self):
        assert is_transient_error(SerializationError("could not serialize access")) is True

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise PostgresError("connection timeout")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()

        assert call_count == 1  # Should not retry


class TestMetrics:
    def test_metrics_counter_increment(self):
        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        collector = MetricsCollector()
        collector.observe_histogram("test_histogram", 0.1)
        collector.observe_histogram("test_histogram", 0.2)
        collector.observe_histogram("test_histogram", 0.5)

        stats = collector.get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_histogram_keeps_recent_window(self):
        collector = MetricsCollector(histogram_window=3)
        for value in (9.0, 1.0, 2.0, 3.0):
            collector.observe_histogram("step_seconds", value)

        stats = collector.get_metrics()["histograms"]["step_seconds"]
        assert stats["count"] == 3
        assert stats["max"] == 3.0

    def test_metrics_with_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("escalations_total", 1, {"action": "OPERATOR_ALERT"})
        collector.inc_counter("escalations_total", 2, {"action": "MANAGER_ALERT"})

        assert collector.get_counter("escalations_total", action="MANAGER_ALERT") == 2
        assert "escalations_total{action=OPERATOR_ALERT}" in collector.get_metrics()["counters"]

    def test_dispatch_metrics_facade(self):
        DispatchMetrics.attempts_created(3, step=1)
        DispatchMetrics.conflict("response")
        with DispatchMetrics.track_selection_time("plumbing"):
            pass

        collector = get_metrics_collector()
        assert collector.get_counter("dispatch_attempts_created_total", step=1) == 3
        assert collector.get_counter("command_conflicts_total", command="response") == 1
        histograms = collector.get_metrics()["histograms"]
        assert histograms["candidate_selection_seconds{category=plumbing}"]["count"] == 1


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("dispatch", logging.WARNING, __file__, 10, "step expired", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_dispatch_context(self):
        data = json.loads(JSONFormatter().format(self._record(job_id="job-1", attempt_id="att-9")))
        assert data["message"] == "step expired"
        assert data["level"] == "WARNING"
        assert data["job_id"] == "job-1"
        assert data["attempt_id"] == "att-9"

    def test_console_formatter_shortens_ids(self):
        line = ConsoleFormatter().format(self._record(job_id="0123456789abcdef"))
        assert "job=01234567" in line
        assert "step expired" in line

    def test_log_context_adds_fields(self, caplog):
        logger = logging.getLogger("dispatch.test")
        with caplog.at_level(logging.INFO, logger="dispatch.test"):
            LogContext(logger, job_id="job-1").info("hello", extra={"step": 2})

        record = caplog.records[-1]
        assert record.job_id == "job-1"
        assert record.step == 2
        assert not hasattr(record, "attempt_id")


class TestConfig:
    def test_defaults(self):
        s = Settings()
        assert s.app_env == "dev"
        assert s.default_escalation_steps == [1, 2, 5]
        assert s.is_production is False

    def test_production_requires_endpoints(self):
        s = Settings(app_env="prod", admin_token=None, database_url=None)
        missing = s.validate_required_for_production()
        assert "admin_token" in missing
        assert "database_url" in missing
        with pytest.raises(RuntimeError):
            validate_or_warn(s)

    def test_rejects_out_of_range_values(self):
        with pytest.raises(ValidationError):
            Settings(sla_warning_min_elapsed_ratio=1.5)

    def test_pool_bounds_warning(self):
        s = Settings(pg_pool_min=10, pg_pool_max=5)
        assert any("pg_pool_min" in w for w in warn_on_risky_config(s))

    def test_dev_only_warns(self):
        s = Settings(app_env="dev", admin_token=None, policy_cache_ttl_seconds=3600)
        warnings = warn_on_risky_config(s)
        assert any("admin_token" in w for w in warnings)
        assert any("policy_cache_ttl_seconds" in w for w in warnings)
        validate_or_warn(s)


def _conn_ctx(conn):
    ctx = MagicMock()
    ctx.return_value.__aenter__ = AsyncMock(return_value=conn)
    ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return ctx


class TestMigrations:
    def test_migration_files_sorted(self):
        names = [p.name for p in migration_files()]
        assert names == sorted(names)
        assert names

    @pytest.mark.asyncio
    async def test_applies_pending_files_under_lock(self):
        conn = AsyncMock()
        conn.fetch.return_value = []

        with patch("dispatch_engine.infra.migrations_async.db_conn", _conn_ctx(conn)):
            result = await apply_migrations()

        assert result["ok"] is True
        assert result["count"] == len(migration_files())
        assert result["modified"] == []
        first = conn.execute.await_args_list[0]
        assert first.args == ("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_ID)
        inserts = [c for c in conn.execute.await_args_list if "INSERT INTO schema_migrations" in c.args[0]]
        assert len(inserts) == result["count"]
        path = migration_files()[0]
        assert inserts[0].args[1:] == (path.name, checksum(path.read_text(encoding="utf-8")))

    @pytest.mark.asyncio
    async def test_skips_applied_and_reports_modified(self):
        files = migration_files()
        conn = AsyncMock()
        conn.fetch.return_value = [{"version": p.name, "checksum": "edited"} for p in files]

        with patch("dispatch_engine.infra.migrations_async.db_conn", _conn_ctx(conn)):
            result = await apply_migrations()

        assert result["applied"] == []
        assert result["modified"] == [p.name for p in files]
        assert not any("INSERT INTO" in c.args[0] for c in conn.execute.await_args_list)


class TestPool:
    def test_status_before_init(self):
        assert pool_status() == {"ready": False}

    @pytest.mark.asyncio
    async def test_get_pool_requires_init(self):
        with pytest.raises(RuntimeError):
            await get_pool()
