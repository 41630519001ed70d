#!/usr/bin/env python3
"""Bring the job store schema up to date before workers start.

Waits for the job store to accept connections, then runs Alembic to ``head``.
"""
import logging
import sys
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from excel_importer.core.config import get_settings

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s - %(message)s",
)

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def wait_for_db(database_url: str, max_retries: int = 30, retry_interval: int = 2) -> bool:
    """Poll the database until ``SELECT 1`` succeeds or attempts run out."""
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        for attempt in range(1, max_retries + 1):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                logger.info("Job store connection established")
                return True
            except OperationalError as e:
                if attempt == max_retries:
                    logger.error(f"Job store unreachable after {max_retries} attempts: {e}")
                    return False
                logger.warning(f"Attempt {attempt}/{max_retries} failed, retrying in {retry_interval}s")
                time.sleep(retry_interval)
    finally:
        engine.dispose()
    return False


def run_migrations(database_url: str) -> None:
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)

    logger.info("Running job store migrations to 'head'")
    command.upgrade(alembic_cfg, "head")
    logger.info("Migrations completed")


def main() -> int:
    settings = get_settings()

    if not wait_for_db(settings.database_url):
        return 1

    run_migrations(settings.database_url)
    return 0


if __name__ == "__main__":
    sys.exit(main())
