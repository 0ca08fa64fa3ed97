"""PostgreSQL implementation of ProgressEventRepo.

Idempotence comes from the uq_progress_events_user_lesson constraint:
INSERT ... ON CONFLICT DO NOTHING, then read back whichever row won.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import LessonRow, ProgressEventRow
from app.models.progress import ProgressEvent
from app.repos.unit_of_work import TransientStoreError


class PgProgressEventRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_if_absent(self, event: ProgressEvent) -> tuple[ProgressEvent, bool]:
        stmt = (
            insert(ProgressEventRow)
            .values(
                id=event.id,
                user_id=event.user_id,
                course_id=event.course_id,
                lesson_id=event.lesson_id,
                completed_at=event.completed_at,
            )
            .on_conflict_do_nothing(
                index_elements=[ProgressEventRow.user_id, ProgressEventRow.lesson_id]
            )
            .returning(ProgressEventRow.id)
        )
        inserted = (await self._session.execute(stmt)).scalar_one_or_none()
        if inserted is not None:
            return event, True

        existing = await self.get(event.user_id, event.lesson_id)
        if existing is None:
            # Conflicting row vanished between statements (lesson deleted)
            raise TransientStoreError("progress event conflict could not be resolved")
        return existing, False

    async def get(self, user_id: UUID, lesson_id: UUID) -> ProgressEvent | None:
        stmt = select(ProgressEventRow).where(
            ProgressEventRow.user_id == user_id,
            ProgressEventRow.lesson_id == lesson_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_event(row)

    async def count_completed(self, user_id: UUID, course_id: UUID) -> int:
        # Only lessons that still belong to the course count
        stmt = (
            select(func.count(func.distinct(ProgressEventRow.lesson_id)))
            .select_from(ProgressEventRow)
            .join(LessonRow, LessonRow.id == ProgressEventRow.lesson_id)
            .where(
                ProgressEventRow.user_id == user_id,
                LessonRow.course_id == course_id,
            )
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def list_for_enrollment(
        self, user_id: UUID, course_id: UUID
    ) -> list[ProgressEvent]:
        stmt = (
            select(ProgressEventRow)
            .where(
                ProgressEventRow.user_id == user_id,
                ProgressEventRow.course_id == course_id,
            )
            .order_by(ProgressEventRow.completed_at, ProgressEventRow.lesson_id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_event(r) for r in rows]

    async def delete_for_lesson(self, lesson_id: UUID) -> int:
        result = await self._session.execute(
            delete(ProgressEventRow).where(ProgressEventRow.lesson_id == lesson_id)
        )
        return result.rowcount

    async def delete_for_enrollment(self, user_id: UUID, course_id: UUID) -> int:
        result = await self._session.execute(
            delete(ProgressEventRow).where(
                ProgressEventRow.user_id == user_id,
                ProgressEventRow.course_id == course_id,
            )
        )
        return result.rowcount


def _row_to_event(row: ProgressEventRow) -> ProgressEvent:
    return ProgressEvent(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        lesson_id=row.lesson_id,
        completed_at=row.completed_at,
    )
