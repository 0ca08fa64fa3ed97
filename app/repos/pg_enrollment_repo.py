"""PostgreSQL implementation of EnrollmentRepo.

get_for_update() issues SELECT ... FOR UPDATE; the row stays locked until
the surrounding transaction (PgUnitOfWork) commits or rolls back.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import EnrollmentRow
from app.models.enrollment import Enrollment


class PgEnrollmentRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: UUID, course_id: UUID) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.user_id == user_id,
            EnrollmentRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_enrollment(row)

    async def get_for_update(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None:
        stmt = (
            select(EnrollmentRow)
            .where(
                EnrollmentRow.user_id == user_id,
                EnrollmentRow.course_id == course_id,
            )
            .with_for_update()
            # Re-read the row even if this session already has it loaded
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_enrollment(row)

    async def add(self, enrollment: Enrollment) -> None:
        row = EnrollmentRow(
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            status=enrollment.status,
            progress_percentage=enrollment.progress_percentage,
            payment_status=enrollment.payment_status,
            payment_amount=enrollment.payment_amount,
            enrolled_at=enrollment.enrolled_at,
            completed_at=enrollment.completed_at,
            last_activity_at=enrollment.last_activity_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            raise ValueError("enrollment already exists") from None

    async def save(self, enrollment: Enrollment) -> None:
        stmt = (
            update(EnrollmentRow)
            .where(
                EnrollmentRow.user_id == enrollment.user_id,
                EnrollmentRow.course_id == enrollment.course_id,
            )
            .values(
                status=enrollment.status,
                progress_percentage=enrollment.progress_percentage,
                payment_status=enrollment.payment_status,
                payment_amount=enrollment.payment_amount,
                completed_at=enrollment.completed_at,
                last_activity_at=enrollment.last_activity_at,
            )
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise KeyError("enrollment not found")

    async def delete(self, user_id: UUID, course_id: UUID) -> bool:
        stmt = delete(EnrollmentRow).where(
            EnrollmentRow.user_id == user_id,
            EnrollmentRow.course_id == course_id,
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.course_id == course_id)
            .order_by(EnrollmentRow.enrolled_at, EnrollmentRow.user_id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(r) for r in rows]

    async def list_by_user(self, user_id: UUID) -> list[Enrollment]:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.user_id == user_id)
            .order_by(EnrollmentRow.enrolled_at, EnrollmentRow.course_id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(r) for r in rows]

    async def list_completed(self) -> list[Enrollment]:
        stmt = select(EnrollmentRow).where(EnrollmentRow.completed_at.is_not(None))
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(r) for r in rows]


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        user_id=row.user_id,
        course_id=row.course_id,
        enrolled_at=row.enrolled_at,
        status=row.status,
        progress_percentage=row.progress_percentage,
        payment_status=row.payment_status,
        payment_amount=row.payment_amount,
        completed_at=row.completed_at,
        last_activity_at=row.last_activity_at,
    )
