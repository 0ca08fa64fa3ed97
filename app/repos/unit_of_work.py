"""Unit of work: one transaction and the repositories bound to it.

Services open a unit of work with ``async with uow_factory() as uow:``.
Leaving the block normally commits; an exception rolls back and
propagates.  The in-memory flavour shares one ``InMemoryDatabase``
across units of work, so tests see writes made by earlier calls.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from app.repos.analytics_repo import (
    AnalyticsRepo,
    InMemoryAnalyticsRepo,
    InMemorySnapshotRepo,
    SnapshotRepo,
)
from app.repos.certificate_repo import CertificateRepo, InMemoryCertificateRepo
from app.repos.course_repo import (
    CourseRepo,
    InMemoryCourseRepo,
    InMemoryLessonRepo,
    InMemoryReviewRepo,
    LessonRepo,
    ReviewRepo,
)
from app.repos.enrollment_repo import EnrollmentRepo, InMemoryEnrollmentRepo
from app.repos.progress_repo import InMemoryProgressEventRepo, ProgressEventRepo
from app.repos.user_repo import InMemoryUserRepo, UserRepo


class TransientStoreError(Exception):
    """The store refused the transaction for a reason worth retrying.

    Deadlocks, serialization failures, lock timeouts and dropped
    connections all end up here.
    """


class UnitOfWork(Protocol):
    users: UserRepo
    courses: CourseRepo
    lessons: LessonRepo
    reviews: ReviewRepo
    enrollments: EnrollmentRepo
    progress: ProgressEventRepo
    certificates: CertificateRepo
    analytics: AnalyticsRepo
    snapshots: SnapshotRepo

    async def __aenter__(self) -> UnitOfWork: ...
    async def __aexit__(self, exc_type, exc, tb) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]


class InMemoryDatabase:
    """Process-local tables for tests and running without PostgreSQL.

    Writes are applied immediately, so a rolled-back in-memory unit of
    work does not undo them.  Services order their writes so that every
    validation happens before the first write.
    """

    def __init__(self) -> None:
        self.users = InMemoryUserRepo()
        self.courses = InMemoryCourseRepo()
        self.lessons = InMemoryLessonRepo()
        self.reviews = InMemoryReviewRepo()
        self.enrollments = InMemoryEnrollmentRepo()
        self.progress = InMemoryProgressEventRepo()
        self.certificates = InMemoryCertificateRepo()
        self.analytics = InMemoryAnalyticsRepo(self)
        self.snapshots = InMemorySnapshotRepo()

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)


class InMemoryUnitOfWork:
    def __init__(self, db: InMemoryDatabase) -> None:
        self.users = db.users
        self.courses = db.courses
        self.lessons = db.lessons
        self.reviews = db.reviews
        self.enrollments = db.enrollments
        self.progress = db.progress
        self.certificates = db.certificates
        self.analytics = db.analytics
        self.snapshots = db.snapshots

    async def __aenter__(self) -> InMemoryUnitOfWork:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Row locks taken with get_for_update live until the transaction ends
        self.enrollments.release_row_locks()
