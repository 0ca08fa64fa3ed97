"""Async SQLAlchemy engine and session factory.

When DATABASE_URL is configured, provides:
- async engine for PostgreSQL via asyncpg
- async session factory used by PgUnitOfWork
- lifespan hook for worker startup/shutdown

When DATABASE_URL is None (no database configured), all exports are None
and the services fall back to the in-memory store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all table models."""


# --- Engine and session factory (None when no DATABASE_URL) ---

if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,  # log SQL in dev only
        pool_size=5,
        max_overflow=10,
        pool_timeout=SETTINGS.db_timeout_seconds,
        # asyncpg cancels any single statement running past this
        connect_args={"command_timeout": SETTINGS.db_timeout_seconds},
    )
    async_session_factory: async_sessionmaker[AsyncSession] | None = (
        async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def lifespan_db():
    """Startup/shutdown hook for the database engine."""
    if engine is None:
        logger.info("No DATABASE_URL configured; using the in-memory store")
        yield
        return

    logger.info("Database engine created: %s", engine.url)
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
