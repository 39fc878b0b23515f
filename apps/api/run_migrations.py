#!/usr/bin/env python3
"""Database bootstrap: wait for the database, then `alembic upgrade head`.

If migrations fail, fail fast (don't start with an unknown schema).
"""

import logging
import os
import sys
import time

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("run_migrations")


def _get_alembic_config():
    from alembic.config import Config

    here = os.path.dirname(os.path.abspath(__file__))
    cfg = Config(os.path.join(here, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(here, "alembic"))
    return cfg


def wait_for_db(max_attempts: int = 30, delay_s: float = 2.0) -> bool:
    from core.database import check_db_connection

    for attempt in range(1, max_attempts + 1):
        if check_db_connection():
            return True
        logger.info(f"Database not ready (attempt {attempt}/{max_attempts}); retrying in {delay_s}s")
        time.sleep(delay_s)
    return False


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    if not wait_for_db():
        logger.error("Database never became ready")
        return 1

    from alembic import command

    command.upgrade(_get_alembic_config(), "head")
    logger.info("Migrations applied")
    return 0


if __name__ == "__main__":
    sys.exit(main())
