# cadcore/infra/db_resilience_async.py
"""
Async database resilience utilities.

- ``is_transient_error``: classifies asyncpg/network failures.
- ``retry_on_transient_error``: bounded retry for idempotent reads only.
  Writes are never retried here; a failed write surfaces to the caller.
- ``CircuitBreaker`` + ``persistence_guard``: stop hammering a database
  that is down and translate transient failures into
  ``PersistenceUnavailable`` (HTTP 503).
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncIterator, Callable, TypeVar

import asyncpg

from cadcore.config import settings
from cadcore.core.errors import DispatchError, PersistenceUnavailable
from cadcore.core.ports import VersionConflict
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if a database error is transient (worth a retry or a 503).

    Transient errors:
    - Connection errors / server closed connection
    - Too many connections
    - Deadlock, serialization failure
    - Timeouts
    """
    if isinstance(exc, (DispatchError, VersionConflict, asyncpg.UniqueViolationError)):
        return False

    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        asyncpg.InterfaceError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return True

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "pool not initialized",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 2,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 2.0,
):
    """
    Decorator to retry an idempotent async read on transient errors.

    Example:
        @retry_on_transient_error(max_retries=2)
        async def _fetch(entity_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT ... WHERE entity_id = $1", entity_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        raise
                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Simple circuit breaker for database access.

    States:
    - CLOSED: Normal operation
    - OPEN: Too many failures, reject requests
    - HALF_OPEN: Testing if service recovered
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 30.0,
        name: str = "default",
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def is_available(self) -> bool:
        """Check if circuit breaker allows requests"""
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time >= self.timeout:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                self.state = "HALF_OPEN"
                return True
            return False

        return True

    def record_success(self) -> None:
        if self.state == "HALF_OPEN":
            logger.info(f"Circuit breaker '{self.name}' closing (recovered)")
            self.state = "CLOSED"
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.failure_count >= self.failure_threshold or self.state == "HALF_OPEN":
            if self.state != "OPEN":
                logger.error(
                    f"Circuit breaker '{self.name}' opening "
                    f"(failures: {self.failure_count}/{self.failure_threshold})"
                )
                self.state = "OPEN"

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"


_circuit_breaker = CircuitBreaker(
    failure_threshold=settings.db_breaker_failure_threshold,
    timeout=settings.db_breaker_reset_seconds,
    name="database",
)


def get_circuit_breaker() -> CircuitBreaker:
    return _circuit_breaker


@asynccontextmanager
async def persistence_guard(operation: str) -> AsyncIterator[None]:
    """
    Wrap one store operation.

    Rejects immediately while the breaker is OPEN; transient failures
    inside the block count against the breaker and surface as
    PersistenceUnavailable.  Anything else (VersionConflict, constraint
    violations) propagates unchanged.

    Usage:
        async with persistence_guard("save"):
            async with db_conn() as conn:
                await conn.execute(...)
    """
    breaker = _circuit_breaker
    if not breaker.is_available():
        DispatchMetrics.persistence_error(operation)
        raise PersistenceUnavailable("Database unavailable (circuit breaker open)")

    try:
        yield
    except Exception as exc:
        if not is_transient_error(exc):
            breaker.record_success()
            raise
        breaker.record_failure()
        DispatchMetrics.persistence_error(operation)
        logger.error(f"Database {operation} failed: {type(exc).__name__}: {exc}")
        raise PersistenceUnavailable(f"Database unavailable during {operation}") from exc
    else:
        breaker.record_success()
