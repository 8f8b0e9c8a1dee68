# cadcore/infra/migrations_async.py
"""
SQL migrations for the dispatch store (asyncpg).

Files in cadcore/infra/sql are applied in filename order inside one
transaction; applied versions are tracked in ``schema_migrations``.
"""
from __future__ import annotations

from pathlib import Path

from cadcore.infra.db_async import db_conn
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

_CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version text PRIMARY KEY,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


def sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in sql_dir().glob("*.sql") if p.is_file())


async def applied_versions() -> set[str]:
    async with db_conn() as conn:
        await conn.execute(_CREATE_TRACKING_TABLE)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def pending_migrations() -> list[str]:
    done = await applied_versions()
    return [p.name for p in migration_files() if p.name not in done]


async def apply_migrations() -> dict:
    """
    Apply every migration not yet recorded in schema_migrations.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(_CREATE_TRACKING_TABLE)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
        done = {row["version"] for row in rows}

        applied_now = []
        for path in files:
            if path.name in done:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
