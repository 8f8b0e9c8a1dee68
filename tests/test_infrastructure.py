# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from asyncpg.exceptions import PostgresError, UniqueViolationError

from cadcore.core.errors import NotFound, PersistenceUnavailable
from cadcore.core.ports import VersionConflict
from cadcore.infra.db_resilience_async import (
    CircuitBreaker,
    get_circuit_breaker,
    is_transient_error,
    persistence_guard,
    retry_on_transient_error,
)
from cadcore.infra.health_checks_async import (
    AsyncHealthCheck,
    AsyncHealthChecker,
    CircuitBreakerHealthCheck,
    HealthStatus,
    build_health_checker,
)
from cadcore.infra.logging_config import JSONFormatter
from cadcore.infra.metrics import get_metrics_collector, inc_counter, observe_histogram
from cadcore.infra.schema_validator import SchemaVersionError, validate_schema_version


@pytest.fixture(autouse=True)
def reset_breaker():
    get_circuit_breaker().reset()
    yield
    get_circuit_breaker().reset()


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        exc = PostgresError("connection timeout")
        assert is_transient_error(exc) is True

    def test_is_transient_error_server_closed(self):
        exc = PostgresError("server closed the connection unexpectedly")
        assert is_transient_error(exc) is True

    def test_is_transient_error_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    def test_domain_errors_never_transient(self):
        assert is_transient_error(VersionConflict("call", "c1", 1, 2)) is False
        assert is_transient_error(NotFound("call", "connection-id")) is False
        assert is_transient_error(UniqueViolationError("duplicate key, connection ok")) is False

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


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, name="test")
        breaker.record_failure()
        assert breaker.is_available()
        breaker.record_failure()
        assert breaker.state == "OPEN"
        assert not breaker.is_available()

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, name="test")
        breaker.record_failure()
        assert breaker.is_available()
        assert breaker.state == "HALF_OPEN"
        breaker.record_success()
        assert breaker.state == "CLOSED"

    @pytest.mark.asyncio
    async def test_guard_translates_transient_errors(self):
        with pytest.raises(PersistenceUnavailable):
            async with persistence_guard("save"):
                raise ConnectionError("connection refused")
        assert get_circuit_breaker().failure_count == 1
        assert get_metrics_collector().get_counter("persistence_errors_total", operation="save") == 1

    @pytest.mark.asyncio
    async def test_guard_passes_version_conflict_through(self):
        with pytest.raises(VersionConflict):
            async with persistence_guard("save"):
                raise VersionConflict("call", "c1", 1, 2)
        assert get_circuit_breaker().failure_count == 0

    @pytest.mark.asyncio
    async def test_guard_rejects_while_open(self):
        breaker = get_circuit_breaker()
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        body = AsyncMock()
        with pytest.raises(PersistenceUnavailable, match="circuit breaker"):
            async with persistence_guard("load"):
                await body()
        body.assert_not_awaited()


class TestMetrics:
    def test_metrics_counter_increment(self):
        inc_counter("test_counter")
        inc_counter("test_counter", amount=2)
        assert get_metrics_collector().get_counter("test_counter") == 3

    def test_metrics_histogram_observe(self):
        for value in (1.0, 2.0, 3.0):
            observe_histogram("test_histogram", value)
        stats = get_metrics_collector().get_metrics()["histograms"]["test_histogram"]
        assert stats["count"] == 3

    def test_metrics_with_labels(self):
        inc_counter("transitions_total", entity_type="call")
        inc_counter("transitions_total", entity_type="bolo")
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["transitions_total{entity_type=call}"] == 1
        assert counters["transitions_total{entity_type=bolo}"] == 1


class TestJSONFormatter:
    def test_context_fields_included(self):
        record = logging.LogRecord("cadcore", logging.INFO, __file__, 1, "Unit released", None, None)
        record.actor = "dispatcher-1"
        record.entity_type = "unit"
        record.entity_id = "u1"
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "Unit released"
        assert data["actor"] == "dispatcher-1"
        assert data["entity_id"] == "u1"


# ===================================================================
# Health checks
# ===================================================================


class _StaticCheck(AsyncHealthCheck):
    def __init__(self, name, status, critical=True):
        super().__init__(name, critical=critical)
        self._status = status

    async def check(self):
        return {"status": self._status, "details": "static"}


class TestHealthChecker:
    @pytest.mark.asyncio
    async def test_memory_backend_is_healthy(self):
        result = await build_health_checker(uses_postgres=False).run_checks()
        assert result["status"] == "healthy"
        assert result["checks"] == {}
        assert "schema" not in result

    @pytest.mark.asyncio
    async def test_critical_failure_is_unhealthy(self):
        checker = AsyncHealthChecker(
            checks=[_StaticCheck("database", HealthStatus.UNHEALTHY)], include_schema=False,
        )
        result = await checker.run_checks()
        assert result["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_non_critical_failure_is_degraded(self):
        checker = AsyncHealthChecker(
            checks=[
                _StaticCheck("database", HealthStatus.HEALTHY),
                _StaticCheck("breaker", HealthStatus.UNHEALTHY, critical=False),
            ],
            include_schema=False,
        )
        assert (await checker.run_checks())["status"] == "degraded"
        assert (await checker.run_checks(include_non_critical=False))["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_breaker_check_reports_open(self):
        breaker = get_circuit_breaker()
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()
        result = await CircuitBreakerHealthCheck().check()
        assert result["status"] == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_database_check_without_pool(self):
        from cadcore.infra.health_checks_async import AsyncDatabaseHealthCheck

        with patch("cadcore.infra.health_checks_async.is_pool_initialized", return_value=False):
            result = await AsyncDatabaseHealthCheck().check()
        assert result["status"] == HealthStatus.UNHEALTHY


# ===================================================================
# Schema validation
# ===================================================================


def _patch_schema_conn(fetchval_results):
    mock_conn = MagicMock()
    mock_conn.fetchval = AsyncMock(side_effect=fetchval_results)
    patcher = patch("cadcore.infra.schema_validator.db_conn")
    mock_ctx = patcher.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return patcher


class TestSchemaValidator:
    @pytest.mark.asyncio
    async def test_matching_version(self):
        from cadcore.config import settings

        patcher = _patch_schema_conn([True, settings.expected_schema_version])
        try:
            result = await validate_schema_version()
        finally:
            patcher.stop()
        assert result["ok"] is True

    @pytest.mark.asyncio
    async def test_missing_tracking_table(self):
        patcher = _patch_schema_conn([False])
        try:
            with pytest.raises(SchemaVersionError, match="not been initialized"):
                await validate_schema_version()
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_version_mismatch(self):
        patcher = _patch_schema_conn([True, "000_ancient.sql"])
        try:
            with pytest.raises(SchemaVersionError, match="mismatch"):
                await validate_schema_version()
        finally:
            patcher.stop()


# ===================================================================
# Settings
# ===================================================================


class TestSettings:
    def test_defaults(self):
        from cadcore.config import Settings
        s = Settings(_env_file=None)
        assert s.persistence_backend == "memory"
        assert s.actor_header == "X-Actor-Id"
        assert s.transition_conflict_retries == 3

    def test_invalid_backend_rejected(self):
        from cadcore.config import Settings
        from pydantic import ValidationError
        with pytest.raises(ValidationError):
            Settings(persistence_backend="sqlite", _env_file=None)

    def test_prod_requires_postgres(self):
        from cadcore.config import Settings
        s = Settings(app_env="prod", _env_file=None)
        assert "persistence_backend=postgres" in s.validate_required_for_production()

    def test_prod_with_postgres_and_password(self):
        from cadcore.config import Settings
        s = Settings(app_env="prod", persistence_backend="postgres", pgpassword="x", _env_file=None)
        assert s.validate_required_for_production() == []

    def test_database_dsn(self):
        from cadcore.config import Settings
        s = Settings(pguser="cad", pgpassword="pw", pghost="db", pgport=5433, pgdatabase="cad", _env_file=None)
        assert s.database_dsn == "postgresql://cad:pw@db:5433/cad"

    def test_risky_config_warnings(self):
        from cadcore.config import Settings, warn_on_risky_config
        s = Settings(app_env="staging", transition_conflict_retries=0, _env_file=None)
        warnings = warn_on_risky_config(s)
        assert any("memory" in w for w in warnings)
        assert any("transition_conflict_retries" in w for w in warnings)
