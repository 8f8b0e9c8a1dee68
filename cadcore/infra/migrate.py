#!/usr/bin/env python3
# cadcore/infra/migrate.py
"""
Standalone migration runner.

    python -m cadcore.infra.migrate            # apply pending migrations
    python -m cadcore.infra.migrate --status   # list pending, change nothing

Run it before starting the service (CI/CD step, init container, or a
dedicated "migrate" compose service).  The service only validates the
schema version at startup; it never migrates.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from cadcore.config import settings
from cadcore.infra.db_async import close_pool, init_pool
from cadcore.infra.logging_config import get_logger, setup_logging
from cadcore.infra.migrations_async import apply_migrations, pending_migrations

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main(status_only: bool = False) -> int:
    logger.info("=" * 60)
    logger.info("Dispatch store migration runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        if status_only:
            pending = await pending_migrations()
            if pending:
                logger.info(f"{len(pending)} pending migration(s):")
                for name in pending:
                    logger.info(f"  - {name}")
            else:
                logger.info("Schema is up to date")
            return 0

        result = await apply_migrations()
        logger.info(f"Status: {'SUCCESS' if result['ok'] else 'FAILED'}")
        for name in result["applied"]:
            logger.info(f"  applied {name}")
        if not result["applied"]:
            logger.info("No new migrations to apply")
        return 0 if result["ok"] else 1

    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1

    finally:
        await close_pool()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Apply dispatch store migrations")
    parser.add_argument("--status", action="store_true", help="only list pending migrations")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(status_only=args.status)))
