# cadcore/infra/schema_validator.py
"""
Schema version check for the postgres backend.

The service never migrates on its own.  At startup it compares the
latest applied migration with ``settings.expected_schema_version`` and
refuses to start on a mismatch; run ``python -m cadcore.infra.migrate``
first.
"""
from __future__ import annotations

from cadcore.config import settings
from cadcore.infra.db_async import db_conn
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRACKING_TABLE_EXISTS = """
SELECT EXISTS (
    SELECT FROM information_schema.tables
    WHERE table_schema = 'public'
    AND table_name = 'schema_migrations'
)
"""


class SchemaVersionError(RuntimeError):
    """Database schema is missing or not the version this build expects."""


async def validate_schema_version() -> dict:
    """
    Returns:
        dict with keys ok, current_version, expected_version

    Raises:
        SchemaVersionError: schema missing, empty or at another version
    """
    expected = settings.expected_schema_version
    async with db_conn() as conn:
        if not await conn.fetchval(_TRACKING_TABLE_EXISTS):
            error = (
                "schema_migrations table not found; database has not been initialized. "
                "Run: python -m cadcore.infra.migrate"
            )
            logger.critical(error)
            raise SchemaVersionError(error)

        # Migrations of one run share applied_at, so order by filename.
        current = await conn.fetchval(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if current is None:
        error = "No migrations have been applied. Run: python -m cadcore.infra.migrate"
        logger.critical(error)
        raise SchemaVersionError(error)

    if current != expected:
        error = (
            f"Schema version mismatch: expected {expected}, found {current}. "
            f"Run: python -m cadcore.infra.migrate"
        )
        logger.critical(error, extra={"expected": expected, "current": current})
        raise SchemaVersionError(error)

    logger.info(f"Schema version validated: {current}")
    return {"ok": True, "current_version": current, "expected_version": expected}


async def get_schema_info() -> dict:
    """Schema state for /ready and debugging."""
    async with db_conn() as conn:
        if not await conn.fetchval(_TRACKING_TABLE_EXISTS):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version"
        )

    latest = rows[-1]["version"] if rows else None
    return {
        "initialized": True,
        "migrations_applied": len(rows),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
