"""PostgreSQL unit of work: one AsyncSession, one transaction."""

from __future__ import annotations

import logging

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.repos.pg_analytics_repo import PgAnalyticsRepo, PgSnapshotRepo
from app.repos.pg_certificate_repo import PgCertificateRepo
from app.repos.pg_course_repo import PgCourseRepo, PgLessonRepo, PgReviewRepo
from app.repos.pg_enrollment_repo import PgEnrollmentRepo
from app.repos.pg_progress_repo import PgProgressEventRepo
from app.repos.pg_user_repo import PgUserRepo
from app.repos.unit_of_work import TransientStoreError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


def _is_transient(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in _TRANSIENT_SQLSTATES


class PgUnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> PgUnitOfWork:
        session = self._session_factory()
        self._session = session
        self.users = PgUserRepo(session)
        self.courses = PgCourseRepo(session)
        self.lessons = PgLessonRepo(session)
        self.reviews = PgReviewRepo(session)
        self.enrollments = PgEnrollmentRepo(session)
        self.progress = PgProgressEventRepo(session)
        self.certificates = PgCertificateRepo(session)
        self.analytics = PgAnalyticsRepo(session)
        self.snapshots = PgSnapshotRepo(session)
        await session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        session = self._session
        if session is None:
            raise RuntimeError("unit of work exited without being entered")
        try:
            if exc_type is None:
                await session.commit()
            else:
                await session.rollback()
        except DBAPIError as err:
            if _is_transient(err):
                raise TransientStoreError(str(err)) from err
            raise
        finally:
            await session.close()
            self._session = None

        if isinstance(exc, DBAPIError) and _is_transient(exc):
            logger.warning("Transaction aborted by the store: %s", exc.orig)
            raise TransientStoreError(str(exc)) from exc
