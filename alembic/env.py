"""Alembic environment for the progress core schema.

Migrations run synchronously through psycopg2, so the asyncpg URL from
DATABASE_URL is rewritten to a plain postgresql:// URL.  All tables are
registered on Base.metadata by importing app.db.tables.
"""

from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context
from app.core.config import SETTINGS
from app.db.engine import Base

config = context.config

if SETTINGS.database_url:
    config.set_main_option(
        "sqlalchemy.url",
        SETTINGS.database_url.replace("postgresql+asyncpg", "postgresql+psycopg2"),
    )

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

import app.db.tables  # noqa: E402, F401

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout instead of executing it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
