"""PostgreSQL implementations of AnalyticsRepo and SnapshotRepo.

The aggregates are plain GROUP BY queries with FILTER clauses; they read
committed data without locks and may trail concurrent writes slightly.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import SECONDS_PER_DAY
from app.db.tables import (
    AnalyticsSnapshotRow,
    CertificateRow,
    CourseReviewRow,
    CourseRow,
    EnrollmentRow,
    UserRow,
)
from app.models.analytics import AnalyticsSnapshot
from app.repos.analytics_repo import CourseStats, PlatformTotals, StudentCourse


class PgAnalyticsRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def count_users(self, created_before: int, role: str | None = None) -> int:
        stmt = (
            select(func.count())
            .select_from(UserRow)
            .where(UserRow.created_at < created_before)
        )
        if role is not None:
            stmt = stmt.where(UserRow.role == role)
        return (await self._session.execute(stmt)).scalar_one()

    async def signups_by_day(self, since: int, role: str | None = None) -> dict[int, int]:
        day = (UserRow.created_at - UserRow.created_at % SECONDS_PER_DAY).label("day")
        stmt = (
            select(day, func.count())
            .where(UserRow.created_at >= since)
            .group_by(day)
        )
        if role is not None:
            stmt = stmt.where(UserRow.role == role)
        rows = (await self._session.execute(stmt)).all()
        return {int(d): int(n) for d, n in rows}

    async def course_stats(
        self,
        *,
        course_id: UUID | None = None,
        instructor_id: UUID | None = None,
        enrolled_since: int | None = None,
    ) -> list[CourseStats]:
        active = EnrollmentRow.status != "refunded"
        enr = select(
            EnrollmentRow.course_id.label("course_id"),
            func.count().filter(active).label("enrollment_count"),
            func.count()
            .filter(EnrollmentRow.status == "completed")
            .label("completion_count"),
            func.sum(EnrollmentRow.progress_percentage)
            .filter(active)
            .label("progress_sum"),
            func.sum(EnrollmentRow.payment_amount)
            .filter(EnrollmentRow.payment_status == "paid")
            .label("revenue"),
        ).group_by(EnrollmentRow.course_id)
        if enrolled_since is not None:
            enr = enr.where(EnrollmentRow.enrolled_at >= enrolled_since)
        enr_sq = enr.subquery()

        rat_sq = (
            select(
                CourseReviewRow.course_id.label("course_id"),
                func.count().label("rating_count"),
                func.sum(CourseReviewRow.rating).label("rating_sum"),
            )
            .group_by(CourseReviewRow.course_id)
            .subquery()
        )

        stmt = (
            select(
                CourseRow.id,
                CourseRow.slug,
                CourseRow.title,
                CourseRow.instructor_id,
                func.coalesce(enr_sq.c.enrollment_count, 0),
                func.coalesce(enr_sq.c.completion_count, 0),
                func.coalesce(enr_sq.c.progress_sum, 0),
                func.coalesce(enr_sq.c.revenue, 0),
                func.coalesce(rat_sq.c.rating_count, 0),
                func.coalesce(rat_sq.c.rating_sum, 0),
            )
            .outerjoin(enr_sq, enr_sq.c.course_id == CourseRow.id)
            .outerjoin(rat_sq, rat_sq.c.course_id == CourseRow.id)
            .order_by(CourseRow.slug)
        )
        if course_id is not None:
            stmt = stmt.where(CourseRow.id == course_id)
        if instructor_id is not None:
            stmt = stmt.where(CourseRow.instructor_id == instructor_id)

        rows = (await self._session.execute(stmt)).all()
        return [
            CourseStats(
                course_id=r[0],
                slug=r[1],
                title=r[2],
                instructor_id=r[3],
                enrollment_count=int(r[4]),
                completion_count=int(r[5]),
                progress_sum=int(r[6]),
                revenue=Decimal(r[7]),
                rating_count=int(r[8]),
                rating_sum=int(r[9]),
            )
            for r in rows
        ]

    async def student_courses(self, user_id: UUID) -> list[StudentCourse]:
        stmt = (
            select(
                CourseRow.id,
                CourseRow.slug,
                CourseRow.title,
                EnrollmentRow.status,
                EnrollmentRow.progress_percentage,
                EnrollmentRow.enrolled_at,
                EnrollmentRow.completed_at,
                CertificateRow.certificate_code,
            )
            .join(CourseRow, CourseRow.id == EnrollmentRow.course_id)
            .outerjoin(
                CertificateRow,
                and_(
                    CertificateRow.user_id == EnrollmentRow.user_id,
                    CertificateRow.course_id == EnrollmentRow.course_id,
                ),
            )
            .where(EnrollmentRow.user_id == user_id)
            .order_by(EnrollmentRow.enrolled_at, CourseRow.id)
        )
        rows = (await self._session.execute(stmt)).all()
        return [
            StudentCourse(
                course_id=r[0],
                slug=r[1],
                title=r[2],
                status=r[3],
                progress_percentage=r[4],
                enrolled_at=r[5],
                completed_at=r[6],
                certificate_code=r[7],
            )
            for r in rows
        ]

    async def platform_totals(self) -> PlatformTotals:
        by_role = await self._session.execute(
            select(UserRow.role, func.count()).group_by(UserRow.role)
        )
        by_status = await self._session.execute(
            select(CourseRow.status, func.count()).group_by(CourseRow.status)
        )
        active = EnrollmentRow.status != "refunded"
        enr = (
            await self._session.execute(
                select(
                    func.count().filter(active),
                    func.count().filter(EnrollmentRow.status == "completed"),
                    func.coalesce(
                        func.sum(EnrollmentRow.payment_amount).filter(
                            EnrollmentRow.payment_status == "paid"
                        ),
                        0,
                    ),
                ).select_from(EnrollmentRow)
            )
        ).one()
        rat = (
            await self._session.execute(
                select(
                    func.count(), func.coalesce(func.sum(CourseReviewRow.rating), 0)
                ).select_from(CourseReviewRow)
            )
        ).one()
        return PlatformTotals(
            users_by_role={role: int(n) for role, n in by_role.all()},
            courses_by_status={status: int(n) for status, n in by_status.all()},
            enrollment_count=int(enr[0]),
            completion_count=int(enr[1]),
            revenue=Decimal(enr[2]),
            rating_count=int(rat[0]),
            rating_sum=int(rat[1]),
        )


class PgSnapshotRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, metric_type: str, dimension: str, period: str
    ) -> AnalyticsSnapshot | None:
        stmt = select(AnalyticsSnapshotRow).where(
            AnalyticsSnapshotRow.metric_type == metric_type,
            AnalyticsSnapshotRow.dimension == dimension,
            AnalyticsSnapshotRow.period == period,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return AnalyticsSnapshot(
            metric_type=row.metric_type,
            dimension=row.dimension,
            period=row.period,
            payload_json=row.payload_json,
            computed_at=row.computed_at,
        )

    async def upsert(self, snapshot: AnalyticsSnapshot) -> None:
        stmt = insert(AnalyticsSnapshotRow).values(
            metric_type=snapshot.metric_type,
            dimension=snapshot.dimension,
            period=snapshot.period,
            payload_json=snapshot.payload_json,
            computed_at=snapshot.computed_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                AnalyticsSnapshotRow.metric_type,
                AnalyticsSnapshotRow.dimension,
                AnalyticsSnapshotRow.period,
            ],
            set_={
                "payload_json": stmt.excluded.payload_json,
                "computed_at": stmt.excluded.computed_at,
            },
        )
        await self._session.execute(stmt)

    async def delete(
        self, metric_type: str | None = None, dimension: str | None = None
    ) -> int:
        stmt = delete(AnalyticsSnapshotRow)
        if metric_type is not None:
            stmt = stmt.where(AnalyticsSnapshotRow.metric_type == metric_type)
        if dimension is not None:
            stmt = stmt.where(AnalyticsSnapshotRow.dimension == dimension)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def list_keys(self) -> list[tuple[str, str, str]]:
        stmt = select(
            AnalyticsSnapshotRow.metric_type,
            AnalyticsSnapshotRow.dimension,
            AnalyticsSnapshotRow.period,
        ).order_by(
            AnalyticsSnapshotRow.metric_type,
            AnalyticsSnapshotRow.dimension,
            AnalyticsSnapshotRow.period,
        )
        rows = (await self._session.execute(stmt)).all()
        return [(m, d, p) for m, d, p in rows]
