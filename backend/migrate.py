from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from regdesk.config import load_settings
from regdesk.db import Database
from regdesk.logging_utils import configure_logging

logger = logging.getLogger("regdesk.migrate")


def run_migrations() -> None:
    root = Path(__file__).resolve().parent
    alembic_cfg = Config(str(root / "alembic.ini"))
    command.upgrade(alembic_cfg, "head")


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    run_migrations()
    database = Database(settings)
    try:
        database.check_connection()
    finally:
        database.dispose()
    logger.info("Migrations complete", extra={"event": "migrations_complete", "db_backend": database.backend})
