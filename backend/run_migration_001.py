#!/usr/bin/env python3
"""
Create the live-sync tables (tracked_subjects, scheduled_fixtures,
live_match_state) if they do not exist yet.

From repo root: python3 backend/run_migration_001.py
Requires LT_DATABASE_URL (or DATABASE_URL) in the environment, or .env in backend/.
"""
import asyncio
import os
import sys

# Backend dir on path so "shared" resolves (run from repo root or backend/)
_backend_dir = os.path.dirname(os.path.abspath(__file__))
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)
os.chdir(_backend_dir)

from sqlalchemy.exc import SQLAlchemyError

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging

logger = get_logger("run_migration_001")


async def main() -> None:
    settings = get_settings()
    setup_logging("migration")
    db = DatabaseManager(settings)
    await db.connect()
    try:
        await db.create_schema()
        logger.info("migration_applied", migration="001", url=settings.database_url_safe_log)
    except SQLAlchemyError as exc:
        logger.error("migration_failed", migration="001", error=str(exc))
        sys.exit(1)
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
