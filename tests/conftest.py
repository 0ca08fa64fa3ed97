from __future__ import annotations

import asyncio
import itertools
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.models.course import Course, Lesson  # noqa: E402
from app.models.user import User  # noqa: E402
from app.repos.unit_of_work import InMemoryDatabase, TransientStoreError  # noqa: E402
from app.services.aggregator import ProgressAggregator  # noqa: E402
from app.services.analytics import AnalyticsRollup  # noqa: E402
from app.services.catalog import CourseCatalog  # noqa: E402
from app.services.certificates import CertificateIssuer  # noqa: E402
from app.services.ledger import ProgressLedger  # noqa: E402
from app.services.task_queue import InMemoryTaskQueue  # noqa: E402
from app.services.users_service import UserDirectory  # noqa: E402

# 2026-03-02T12:00:00Z
NOW = 1_772_452_800


class FakeClock:
    """Manually advanced clock shared by every service in a test."""

    def __init__(self, start: int = NOW) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FailingUnitOfWork:
    """A unit of work whose store connection drops on entry."""

    async def __aenter__(self):
        raise TransientStoreError("connection dropped")

    async def __aexit__(self, *exc_info):
        return False


def flaky_store(db: InMemoryDatabase, failures: int):
    """Unit-of-work factory whose first ``failures`` transactions fail."""
    remaining = failures

    def factory():
        nonlocal remaining
        if remaining > 0:
            remaining -= 1
            return FailingUnitOfWork()
        return db.unit_of_work()

    return factory


@dataclass
class Services:
    db: InMemoryDatabase
    clock: FakeClock
    queue: InMemoryTaskQueue
    issuer: CertificateIssuer
    aggregator: ProgressAggregator
    ledger: ProgressLedger
    catalog: CourseCatalog
    users: UserDirectory
    rollup: AnalyticsRollup


def build_services(*, code_generator=None, max_code_attempts: int = 5) -> Services:
    db = InMemoryDatabase()
    clock = FakeClock()
    queue = InMemoryTaskQueue()
    issuer_kwargs = {"clock": clock, "max_code_attempts": max_code_attempts}
    if code_generator is not None:
        issuer_kwargs["code_generator"] = code_generator
    issuer = CertificateIssuer(db.unit_of_work, **issuer_kwargs)
    aggregator = ProgressAggregator(
        db.unit_of_work, issuer=issuer, queue=queue, clock=clock
    )
    return Services(
        db=db,
        clock=clock,
        queue=queue,
        issuer=issuer,
        aggregator=aggregator,
        ledger=ProgressLedger(db.unit_of_work, aggregator, queue=queue, clock=clock),
        catalog=CourseCatalog(db.unit_of_work, aggregator, queue=queue, clock=clock),
        users=UserDirectory(db.unit_of_work, clock=clock),
        rollup=AnalyticsRollup(
            db.unit_of_work, max_staleness_seconds=900, clock=clock
        ),
    )


@pytest.fixture
def svc() -> Services:
    """Fresh in-memory store and services for each test."""
    return build_services()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

_counter = itertools.count(1)


def run(coro):
    return asyncio.run(coro)


async def create_instructor(svc: Services, email: str | None = None) -> User:
    email = email or f"instructor{next(_counter)}@example.com"
    return await svc.users.create_user(email, "Instructor", role="instructor")


async def create_student(svc: Services, email: str | None = None) -> User:
    email = email or f"student{next(_counter)}@example.com"
    return await svc.users.create_user(email, "Student")


async def create_course(
    svc: Services,
    lessons: int = 4,
    *,
    price: Decimal = Decimal("0.00"),
    slug: str | None = None,
    instructor: User | None = None,
    publish: bool = True,
) -> tuple[Course, list[Lesson]]:
    """A course with ``lessons`` lessons, published unless told otherwise."""
    instructor = instructor or await create_instructor(svc)
    course = await svc.catalog.create_course(
        instructor.id, slug or f"course-{next(_counter)}", "Course", price
    )
    created = [
        await svc.catalog.add_lesson(course.id, f"Lesson {n}")
        for n in range(1, lessons + 1)
    ]
    if publish:
        course = await svc.catalog.set_course_status(course.id, "published")
    return course, created


async def enrolled_student(
    svc: Services, lessons: int = 4, **course_kwargs
) -> tuple[User, Course, list[Lesson]]:
    course, created = await create_course(svc, lessons, **course_kwargs)
    student = await create_student(svc)
    await svc.catalog.enroll(student.id, course.id)
    return student, course, created
