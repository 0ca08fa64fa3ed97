"""Read-side queries for the analytics rollup, plus the snapshot cache.

AnalyticsRepo returns raw aggregates (counts, sums).  Ratios, averages
and formatting are the rollup service's job, so the in-memory and
PostgreSQL implementations only have to agree on the sums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

from app.core.clock import day_start
from app.models.analytics import AnalyticsSnapshot

if TYPE_CHECKING:
    from app.repos.unit_of_work import InMemoryDatabase


@dataclass(frozen=True, slots=True)
class CourseStats:
    course_id: UUID
    slug: str
    title: str
    instructor_id: UUID
    enrollment_count: int  # refunded enrollments excluded
    completion_count: int
    progress_sum: int
    revenue: Decimal  # payment_status == paid only
    rating_count: int
    rating_sum: int


@dataclass(frozen=True, slots=True)
class StudentCourse:
    course_id: UUID
    slug: str
    title: str
    status: str
    progress_percentage: int
    enrolled_at: int
    completed_at: int | None
    certificate_code: str | None


@dataclass(frozen=True, slots=True)
class PlatformTotals:
    users_by_role: dict[str, int] = field(default_factory=dict)
    courses_by_status: dict[str, int] = field(default_factory=dict)
    enrollment_count: int = 0
    completion_count: int = 0
    revenue: Decimal = Decimal("0.00")
    rating_count: int = 0
    rating_sum: int = 0


class AnalyticsRepo(Protocol):
    async def count_users(
        self, created_before: int, role: str | None = None
    ) -> int: ...
    async def signups_by_day(
        self, since: int, role: str | None = None
    ) -> dict[int, int]: ...
    async def course_stats(
        self,
        *,
        course_id: UUID | None = None,
        instructor_id: UUID | None = None,
        enrolled_since: int | None = None,
    ) -> list[CourseStats]: ...
    async def student_courses(self, user_id: UUID) -> list[StudentCourse]: ...
    async def platform_totals(self) -> PlatformTotals: ...


class SnapshotRepo(Protocol):
    async def get(
        self, metric_type: str, dimension: str, period: str
    ) -> AnalyticsSnapshot | None: ...
    async def upsert(self, snapshot: AnalyticsSnapshot) -> None: ...
    async def delete(
        self, metric_type: str | None = None, dimension: str | None = None
    ) -> int: ...
    async def list_keys(self) -> list[tuple[str, str, str]]: ...


class InMemoryAnalyticsRepo:
    """Computes the aggregates by scanning the other in-memory repos."""

    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def count_users(self, created_before: int, role: str | None = None) -> int:
        users = await self._db.users.list_all(role)
        return sum(1 for u in users if u.created_at < created_before)

    async def signups_by_day(self, since: int, role: str | None = None) -> dict[int, int]:
        counts: dict[int, int] = {}
        for u in await self._db.users.list_all(role):
            if u.created_at >= since:
                day = day_start(u.created_at)
                counts[day] = counts.get(day, 0) + 1
        return counts

    async def course_stats(
        self,
        *,
        course_id: UUID | None = None,
        instructor_id: UUID | None = None,
        enrolled_since: int | None = None,
    ) -> list[CourseStats]:
        stats: list[CourseStats] = []
        for course in await self._db.courses.list_all(instructor_id):
            if course_id is not None and course.id != course_id:
                continue
            enrollments = [
                e
                for e in await self._db.enrollments.list_by_course(course.id)
                if enrolled_since is None or e.enrolled_at >= enrolled_since
            ]
            active = [e for e in enrollments if e.is_active]
            reviews = await self._db.reviews.list_by_course(course.id)
            stats.append(
                CourseStats(
                    course_id=course.id,
                    slug=course.slug,
                    title=course.title,
                    instructor_id=course.instructor_id,
                    enrollment_count=len(active),
                    completion_count=sum(1 for e in active if e.status == "completed"),
                    progress_sum=sum(e.progress_percentage for e in active),
                    revenue=sum(
                        (e.payment_amount for e in enrollments if e.payment_status == "paid"),
                        Decimal("0.00"),
                    ),
                    rating_count=len(reviews),
                    rating_sum=sum(r.rating for r in reviews),
                )
            )
        return stats

    async def student_courses(self, user_id: UUID) -> list[StudentCourse]:
        rows: list[StudentCourse] = []
        for e in await self._db.enrollments.list_by_user(user_id):
            course = await self._db.courses.get_by_id(e.course_id)
            if course is None:
                continue
            cert = await self._db.certificates.get(user_id, e.course_id)
            rows.append(
                StudentCourse(
                    course_id=course.id,
                    slug=course.slug,
                    title=course.title,
                    status=e.status,
                    progress_percentage=e.progress_percentage,
                    enrolled_at=e.enrolled_at,
                    completed_at=e.completed_at,
                    certificate_code=None if cert is None else cert.certificate_code,
                )
            )
        return rows

    async def platform_totals(self) -> PlatformTotals:
        users_by_role: dict[str, int] = {}
        for u in await self._db.users.list_all():
            users_by_role[u.role] = users_by_role.get(u.role, 0) + 1

        courses_by_status: dict[str, int] = {}
        for c in await self._db.courses.list_all():
            courses_by_status[c.status] = courses_by_status.get(c.status, 0) + 1

        stats = await self.course_stats()
        return PlatformTotals(
            users_by_role=users_by_role,
            courses_by_status=courses_by_status,
            enrollment_count=sum(s.enrollment_count for s in stats),
            completion_count=sum(s.completion_count for s in stats),
            revenue=sum((s.revenue for s in stats), Decimal("0.00")),
            rating_count=sum(s.rating_count for s in stats),
            rating_sum=sum(s.rating_sum for s in stats),
        )


class InMemorySnapshotRepo:
    def __init__(self) -> None:
        self._store: dict[tuple[str, str, str], AnalyticsSnapshot] = {}

    async def get(
        self, metric_type: str, dimension: str, period: str
    ) -> AnalyticsSnapshot | None:
        return self._store.get((metric_type, dimension, period))

    async def upsert(self, snapshot: AnalyticsSnapshot) -> None:
        key = (snapshot.metric_type, snapshot.dimension, snapshot.period)
        self._store[key] = snapshot

    async def delete(
        self, metric_type: str | None = None, dimension: str | None = None
    ) -> int:
        keys = [
            k
            for k in self._store
            if (metric_type is None or k[0] == metric_type)
            and (dimension is None or k[1] == dimension)
        ]
        for k in keys:
            del self._store[k]
        return len(keys)

    async def list_keys(self) -> list[tuple[str, str, str]]:
        return sorted(self._store)
