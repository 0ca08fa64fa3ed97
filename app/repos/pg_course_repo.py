"""PostgreSQL implementations of CourseRepo, LessonRepo and ReviewRepo."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import CourseReviewRow, CourseRow, LessonRow
from app.models.course import Course, CourseReview, Lesson


class PgCourseRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, course_id: UUID) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.id == course_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_course(row)

    async def get_by_slug(self, slug: str) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.slug == slug)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_course(row)

    async def add(self, course: Course) -> None:
        row = CourseRow(
            id=course.id,
            instructor_id=course.instructor_id,
            slug=course.slug,
            title=course.title,
            status=course.status,
            price=course.price,
            total_lesson_count=course.total_lesson_count,
            created_at=course.created_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            raise ValueError("slug already exists") from None

    async def update_status(self, course_id: UUID, status: str) -> Course | None:
        stmt = (
            update(CourseRow)
            .where(CourseRow.id == course_id)
            .values(status=status)
            .returning(CourseRow)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_course(row)

    async def set_lesson_count(self, course_id: UUID, count: int) -> None:
        stmt = (
            update(CourseRow)
            .where(CourseRow.id == course_id)
            .values(total_lesson_count=count)
        )
        await self._session.execute(stmt)

    async def list_all(self, instructor_id: UUID | None = None) -> list[Course]:
        stmt = select(CourseRow).order_by(CourseRow.slug)
        if instructor_id is not None:
            stmt = stmt.where(CourseRow.instructor_id == instructor_id)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_course(r) for r in rows]


class PgLessonRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, lesson_id: UUID) -> Lesson | None:
        stmt = select(LessonRow).where(LessonRow.id == lesson_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_lesson(row)

    async def add(self, lesson: Lesson) -> None:
        self._session.add(
            LessonRow(
                id=lesson.id,
                course_id=lesson.course_id,
                position=lesson.position,
                title=lesson.title,
                duration_minutes=lesson.duration_minutes,
            )
        )
        await self._session.flush()

    async def delete(self, lesson_id: UUID) -> bool:
        result = await self._session.execute(
            delete(LessonRow).where(LessonRow.id == lesson_id)
        )
        return result.rowcount > 0

    async def list_by_course(self, course_id: UUID) -> list[Lesson]:
        stmt = (
            select(LessonRow)
            .where(LessonRow.course_id == course_id)
            .order_by(LessonRow.position, LessonRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_lesson(r) for r in rows]

    async def count_by_course(self, course_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(LessonRow)
            .where(LessonRow.course_id == course_id)
        )
        return (await self._session.execute(stmt)).scalar_one()


class PgReviewRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: UUID, course_id: UUID) -> CourseReview | None:
        stmt = select(CourseReviewRow).where(
            CourseReviewRow.user_id == user_id,
            CourseReviewRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_review(row)

    async def upsert(self, review: CourseReview) -> None:
        stmt = insert(CourseReviewRow).values(
            user_id=review.user_id,
            course_id=review.course_id,
            rating=review.rating,
            comment=review.comment,
            created_at=review.created_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[CourseReviewRow.user_id, CourseReviewRow.course_id],
            set_={
                "rating": stmt.excluded.rating,
                "comment": stmt.excluded.comment,
                "created_at": stmt.excluded.created_at,
            },
        )
        await self._session.execute(stmt)

    async def list_by_course(self, course_id: UUID) -> list[CourseReview]:
        stmt = select(CourseReviewRow).where(CourseReviewRow.course_id == course_id)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_review(r) for r in rows]


def _row_to_course(row: CourseRow) -> Course:
    return Course(
        id=row.id,
        instructor_id=row.instructor_id,
        slug=row.slug,
        title=row.title,
        status=row.status,
        price=row.price,
        total_lesson_count=row.total_lesson_count,
        created_at=row.created_at,
    )


def _row_to_lesson(row: LessonRow) -> Lesson:
    return Lesson(
        id=row.id,
        course_id=row.course_id,
        position=row.position,
        title=row.title,
        duration_minutes=row.duration_minutes,
    )


def _row_to_review(row: CourseReviewRow) -> CourseReview:
    return CourseReview(
        user_id=row.user_id,
        course_id=row.course_id,
        rating=row.rating,
        comment=row.comment,
        created_at=row.created_at,
    )
