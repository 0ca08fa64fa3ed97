"""Course catalog: courses, lessons, enrollments, payments and reviews.

Adding or removing a lesson changes total_lesson_count, so every
enrollment of that course is recomputed in the same transaction.  A
removal can finish a course for someone; their certificate is issued
after the commit, the same way the ledger does it.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from decimal import Decimal
from uuid import UUID

from app.core.clock import utc_now
from app.db.store import uow_factory as default_uow_factory
from app.models.course import COURSE_STATUSES, Course, CourseReview, Lesson
from app.models.enrollment import Enrollment
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.aggregator import ProgressAggregator, progress_aggregator
from app.services.errors import (
    AlreadyEnrolledError,
    CourseNotAvailableError,
    CourseNotFoundError,
    EnrollmentNotFoundError,
    InvalidReviewError,
    LessonNotFoundError,
    NotEnrolledError,
    PermissionDeniedError,
)
from app.services.retry import run_in_unit_of_work
from app.services.task_queue import (
    ANALYTICS_REFRESH,
    TaskQueue,
    enqueue_best_effort,
    task_queue,
)
from app.services.users_service import UserNotFoundError

logger = logging.getLogger(__name__)

# Payment states a caller may record; "free" and "refunded" are set by
# enroll() and refund() only.
RECORDABLE_PAYMENT_STATUSES = ("pending", "paid", "failed")


class CourseCatalog:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        aggregator: ProgressAggregator,
        *,
        queue: TaskQueue | None = None,
        clock: Callable[[], int] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._aggregator = aggregator
        self._queue = queue
        self._clock = clock

    # --- courses ----------------------------------------------------------

    async def create_course(
        self,
        instructor_id: UUID,
        slug: str,
        title: str,
        price: Decimal = Decimal("0.00"),
    ) -> Course:
        slug = slug.strip().lower()
        if not slug:
            raise ValueError("slug must be non-empty")
        price = Decimal(price)
        if price < 0:
            raise ValueError("price must not be negative")

        course = Course.new(
            instructor_id=instructor_id,
            slug=slug,
            title=title.strip(),
            price=price.quantize(Decimal("0.01")),
            created_at=self._clock(),
        )

        async def work(uow: UnitOfWork) -> Course:
            instructor = await uow.users.get_by_id(instructor_id)
            if instructor is None:
                raise UserNotFoundError(str(instructor_id))
            if instructor.role not in ("instructor", "admin"):
                raise PermissionDeniedError("only instructors and admins own courses")
            if await uow.courses.get_by_slug(slug) is not None:
                raise ValueError(f"slug {slug!r} already exists")
            await uow.courses.add(course)
            return course

        created = await run_in_unit_of_work(
            self._uow_factory, work, operation="create_course"
        )
        logger.info("Created course %s", created.slug, extra={"course_id": str(created.id)})
        await self._analytics_changed("course_created", created.id)
        return created

    async def set_course_status(self, course_id: UUID, status: str) -> Course:
        if status not in COURSE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(COURSE_STATUSES)}")

        async def work(uow: UnitOfWork) -> Course:
            updated = await uow.courses.update_status(course_id, status)
            if updated is None:
                raise CourseNotFoundError(str(course_id))
            return updated

        updated = await run_in_unit_of_work(
            self._uow_factory, work, operation="set_course_status"
        )
        logger.info("Course status -> %s", status, extra={"course_id": str(course_id)})
        await self._analytics_changed("course_status", course_id)
        return updated

    async def get_course(self, course_id: UUID) -> Course | None:
        async def work(uow: UnitOfWork) -> Course | None:
            return await uow.courses.get_by_id(course_id)

        return await run_in_unit_of_work(self._uow_factory, work, operation="get_course")

    async def list_courses(self, instructor_id: UUID | None = None) -> list[Course]:
        async def work(uow: UnitOfWork) -> list[Course]:
            return await uow.courses.list_all(instructor_id)

        return await run_in_unit_of_work(self._uow_factory, work, operation="list_courses")

    # --- lessons ----------------------------------------------------------

    async def add_lesson(
        self,
        course_id: UUID,
        title: str,
        duration_minutes: int = 0,
        position: int | None = None,
    ) -> Lesson:
        if duration_minutes < 0:
            raise ValueError("duration_minutes must not be negative")

        async def work(uow: UnitOfWork) -> tuple[Lesson, list[Enrollment]]:
            if await uow.courses.get_by_id(course_id) is None:
                raise CourseNotFoundError(str(course_id))
            existing = await uow.lessons.list_by_course(course_id)
            pos = position
            if pos is None:
                pos = max((lesson.position for lesson in existing), default=0) + 1
            lesson = Lesson.new(
                course_id=course_id,
                position=pos,
                title=title.strip(),
                duration_minutes=duration_minutes,
            )
            await uow.lessons.add(lesson)
            completed = await self._resync_course(uow, course_id)
            return lesson, completed

        lesson, completed = await run_in_unit_of_work(
            self._uow_factory, work, operation="add_lesson"
        )
        logger.info(
            "Added lesson at position %d",
            lesson.position,
            extra={"course_id": str(course_id), "lesson_id": str(lesson.id)},
        )
        await self._after_resync(course_id, completed)
        return lesson

    async def remove_lesson(self, lesson_id: UUID) -> Lesson:
        """Delete a lesson and its ledger events; certificates are kept."""

        async def work(uow: UnitOfWork) -> tuple[Lesson, list[Enrollment]]:
            lesson = await uow.lessons.get_by_id(lesson_id)
            if lesson is None:
                raise LessonNotFoundError(str(lesson_id))
            await uow.progress.delete_for_lesson(lesson_id)
            await uow.lessons.delete(lesson_id)
            completed = await self._resync_course(uow, lesson.course_id)
            return lesson, completed

        lesson, completed = await run_in_unit_of_work(
            self._uow_factory, work, operation="remove_lesson"
        )
        logger.info(
            "Removed lesson",
            extra={"course_id": str(lesson.course_id), "lesson_id": str(lesson_id)},
        )
        await self._after_resync(lesson.course_id, completed)
        return lesson

    async def list_lessons(self, course_id: UUID) -> list[Lesson]:
        async def work(uow: UnitOfWork) -> list[Lesson]:
            if await uow.courses.get_by_id(course_id) is None:
                raise CourseNotFoundError(str(course_id))
            return await uow.lessons.list_by_course(course_id)

        return await run_in_unit_of_work(self._uow_factory, work, operation="list_lessons")

    async def _resync_course(self, uow: UnitOfWork, course_id: UUID) -> list[Enrollment]:
        """Refresh total_lesson_count and recompute every enrollment.

        Returns the enrollments that transitioned into completed.
        """
        total = await uow.lessons.count_by_course(course_id)
        await uow.courses.set_lesson_count(course_id, total)
        transitioned = []
        for enrollment in await uow.enrollments.list_by_course(course_id):
            progress = await self._aggregator.recompute_in(
                uow, enrollment.user_id, course_id
            )
            if progress.transitioned_to_completed:
                transitioned.append(enrollment)
        return transitioned

    async def _after_resync(self, course_id: UUID, completed: list[Enrollment]) -> None:
        try:
            for enrollment in completed:
                await self._aggregator.after_commit(enrollment.user_id, course_id)
        finally:
            await self._analytics_changed("lessons_changed", course_id)

    # --- enrollments ------------------------------------------------------

    async def enroll(
        self,
        user_id: UUID,
        course_id: UUID,
        payment_amount: Decimal | None = None,
        payment_status: str | None = None,
    ) -> Enrollment:
        if payment_status is not None and payment_status not in RECORDABLE_PAYMENT_STATUSES:
            raise ValueError(f"payment_status must be one of {', '.join(RECORDABLE_PAYMENT_STATUSES)}")

        async def work(uow: UnitOfWork) -> Enrollment:
            if await uow.users.get_by_id(user_id) is None:
                raise UserNotFoundError(str(user_id))
            course = await uow.courses.get_by_id(course_id)
            if course is None:
                raise CourseNotFoundError(str(course_id))
            if course.status != "published":
                raise CourseNotAvailableError(f"course {course.slug} is {course.status}")
            if await uow.enrollments.get(user_id, course_id) is not None:
                raise AlreadyEnrolledError(f"{user_id} already enrolled in {course.slug}")

            if course.is_free:
                status, amount = "free", Decimal("0.00")
            else:
                status = payment_status or "pending"
                amount = course.price if payment_amount is None else Decimal(payment_amount)
            enrollment = Enrollment(
                user_id=user_id,
                course_id=course_id,
                enrolled_at=self._clock(),
                payment_status=status,
                payment_amount=amount.quantize(Decimal("0.01")),
            )
            try:
                await uow.enrollments.add(enrollment)
            except ValueError:
                raise AlreadyEnrolledError(f"{user_id} already enrolled in {course.slug}") from None
            return enrollment

        enrollment = await run_in_unit_of_work(self._uow_factory, work, operation="enroll")
        logger.info(
            "Enrolled (payment %s)",
            enrollment.payment_status,
            extra={"user_id": str(user_id), "course_id": str(course_id)},
        )
        await self._analytics_changed("enrolled", course_id)
        return enrollment

    async def get_enrollment(self, user_id: UUID, course_id: UUID) -> Enrollment | None:
        async def work(uow: UnitOfWork) -> Enrollment | None:
            return await uow.enrollments.get(user_id, course_id)

        return await run_in_unit_of_work(
            self._uow_factory, work, operation="get_enrollment"
        )

    async def record_payment(
        self, user_id: UUID, course_id: UUID, status: str
    ) -> Enrollment:
        if status not in RECORDABLE_PAYMENT_STATUSES:
            raise ValueError(f"payment status must be one of {', '.join(RECORDABLE_PAYMENT_STATUSES)}")

        async def work(uow: UnitOfWork) -> Enrollment:
            enrollment = await uow.enrollments.get_for_update(user_id, course_id)
            if enrollment is None:
                raise EnrollmentNotFoundError(f"{user_id} is not enrolled in {course_id}")
            if not enrollment.is_active:
                raise NotEnrolledError("enrollment was refunded")
            updated = dataclasses.replace(enrollment, payment_status=status)
            await uow.enrollments.save(updated)
            return updated

        updated = await run_in_unit_of_work(
            self._uow_factory, work, operation="record_payment"
        )
        logger.info(
            "Payment %s",
            status,
            extra={"user_id": str(user_id), "course_id": str(course_id)},
        )
        await self._analytics_changed("payment", course_id)
        return updated

    async def refund(self, user_id: UUID, course_id: UUID) -> Enrollment:
        """Refund an enrollment.  Progress stops updating; certificates stay."""

        async def work(uow: UnitOfWork) -> Enrollment:
            enrollment = await uow.enrollments.get_for_update(user_id, course_id)
            if enrollment is None:
                raise EnrollmentNotFoundError(f"{user_id} is not enrolled in {course_id}")
            if not enrollment.is_active:
                return enrollment
            updated = dataclasses.replace(
                enrollment, status="refunded", payment_status="refunded"
            )
            await uow.enrollments.save(updated)
            return updated

        updated = await run_in_unit_of_work(self._uow_factory, work, operation="refund")
        logger.info(
            "Enrollment refunded",
            extra={"user_id": str(user_id), "course_id": str(course_id)},
        )
        await self._analytics_changed("refund", course_id)
        return updated

    async def remove_enrollment(self, user_id: UUID, course_id: UUID) -> None:
        """Delete an enrollment and its ledger; certificates survive."""

        async def work(uow: UnitOfWork) -> None:
            if await uow.enrollments.get_for_update(user_id, course_id) is None:
                raise EnrollmentNotFoundError(f"{user_id} is not enrolled in {course_id}")
            await uow.progress.delete_for_enrollment(user_id, course_id)
            await uow.enrollments.delete(user_id, course_id)

        await run_in_unit_of_work(
            self._uow_factory, work, operation="remove_enrollment"
        )
        logger.info(
            "Enrollment removed",
            extra={"user_id": str(user_id), "course_id": str(course_id)},
        )
        await self._analytics_changed("unenrolled", course_id)

    # --- reviews ----------------------------------------------------------

    async def add_review(
        self, user_id: UUID, course_id: UUID, rating: int, comment: str = ""
    ) -> CourseReview:
        """Create or replace the user's review of a course they are enrolled in."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidReviewError("rating must be an integer from 1 to 5")

        review = CourseReview(
            user_id=user_id,
            course_id=course_id,
            rating=rating,
            comment=comment.strip(),
            created_at=self._clock(),
        )

        async def work(uow: UnitOfWork) -> CourseReview:
            enrollment = await uow.enrollments.get(user_id, course_id)
            if enrollment is None or not enrollment.is_active:
                raise NotEnrolledError(f"{user_id} has no active enrollment in {course_id}")
            await uow.reviews.upsert(review)
            return review

        saved = await run_in_unit_of_work(self._uow_factory, work, operation="add_review")
        await self._analytics_changed("review", course_id)
        return saved

    async def _analytics_changed(self, reason: str, course_id: UUID) -> None:
        await enqueue_best_effort(
            self._queue,
            ANALYTICS_REFRESH,
            {"reason": reason, "course_id": str(course_id)},
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

course_catalog = CourseCatalog(default_uow_factory, progress_aggregator, queue=task_queue)
