"""Default unit-of-work factory for the process.

Mirrors the engine/redis modules: PostgreSQL when DATABASE_URL is set,
otherwise a process-local in-memory database.
"""

from __future__ import annotations

from app.db.engine import async_session_factory
from app.repos.unit_of_work import InMemoryDatabase, UnitOfWork, UnitOfWorkFactory

memory_db: InMemoryDatabase | None

if async_session_factory is not None:
    from app.repos.pg_unit_of_work import PgUnitOfWork

    _session_factory = async_session_factory
    memory_db = None

    def _pg_unit_of_work() -> UnitOfWork:
        return PgUnitOfWork(_session_factory)

    uow_factory: UnitOfWorkFactory = _pg_unit_of_work
else:
    memory_db = InMemoryDatabase()
    uow_factory = memory_db.unit_of_work
