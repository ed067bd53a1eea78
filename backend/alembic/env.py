from __future__ import annotations

from dataclasses import replace
from logging.config import fileConfig
from pathlib import Path
import sys

from alembic import context
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from regdesk.config import _normalize_database_url, load_settings
from regdesk.db import Database
from regdesk.models import Base

load_dotenv()

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migration_settings():
    """Settings for the migration run; `alembic -x url=...` wins over DATABASE_URL."""
    settings = load_settings()
    override = context.get_x_argument(as_dictionary=True).get("url")
    if override:
        settings = replace(settings, database_url=_normalize_database_url(override, settings.database_url))
    return settings


def run_migrations_offline() -> None:
    settings = _migration_settings()
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=settings.is_sqlite,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    settings = _migration_settings()
    database = Database(settings)
    try:
        with database.engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                # SQLite cannot ALTER most constraints in place.
                render_as_batch=database.backend == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        database.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
