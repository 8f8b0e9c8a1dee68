# cadcore/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from cadcore.infra.db_async import get_pool, is_pool_initialized
from cadcore.infra.db_resilience_async import get_circuit_breaker
from cadcore.infra.logging_config import get_logger
from cadcore.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("dispatch_entities", "dispatch_events", "schema_migrations")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity and the dispatch tables"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        if not is_pool_initialized():
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Connection pool not initialized",
            }

        try:
            async with get_pool().acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}"
                    }

                duration = time.time() - start
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "response_time": duration
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class CircuitBreakerHealthCheck(AsyncHealthCheck):
    """Report the database circuit breaker; OPEN means writes are being refused"""

    def __init__(self):
        super().__init__("circuit_breaker", critical=False)

    async def check(self) -> Dict[str, Any]:
        breaker = get_circuit_breaker()
        status = HealthStatus.HEALTHY if breaker.state == "CLOSED" else HealthStatus.DEGRADED
        return {
            "status": status,
            "details": f"Circuit breaker {breaker.state}",
            "failure_count": breaker.failure_count,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None, include_schema: bool = True):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            CircuitBreakerHealthCheck(),
        ]
        self.include_schema = include_schema

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        report: Dict[str, Any] = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time()
        }

        if self.include_schema and overall_status != HealthStatus.UNHEALTHY:
            report["schema"] = await get_schema_info()

        return report


def build_health_checker(uses_postgres: bool) -> AsyncHealthChecker:
    """The memory backend has nothing external to check."""
    if uses_postgres:
        return AsyncHealthChecker()
    return AsyncHealthChecker(checks=[], include_schema=False)
