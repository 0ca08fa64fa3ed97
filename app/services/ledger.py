"""Progress ledger: append-only record of lesson completions.

record_completion() is idempotent per (user, lesson).  A repeat
submission writes no event, runs no recompute and hands back the
enrollment's current progress with duplicate=True.  If that enrollment
has completed but its certificate is still missing (issuance failed
after an earlier commit), the repeat retries issuance.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from uuid import UUID

from app.core.clock import utc_now
from app.core.metrics import LEDGER_EVENTS
from app.db.store import uow_factory as default_uow_factory
from app.models.enrollment import EnrollmentProgress
from app.models.progress import CompletionRecord, ProgressEvent
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.aggregator import ProgressAggregator, progress_aggregator
from app.services.errors import LessonNotFoundError, NotEnrolledError
from app.services.retry import run_in_unit_of_work
from app.services.task_queue import (
    ANALYTICS_REFRESH,
    TaskQueue,
    enqueue_best_effort,
    task_queue,
)

logger = logging.getLogger(__name__)


class ProgressLedger:
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

    async def record_completion(
        self,
        user_id: UUID,
        course_id: UUID,
        lesson_id: UUID,
        completed_at: int | None = None,
    ) -> CompletionRecord:
        """Mark ``lesson_id`` complete for ``user_id`` and recompute progress.

        Raises LessonNotFoundError when the lesson is not part of the
        course and NotEnrolledError without an active enrollment.
        """
        when = completed_at if completed_at is not None else self._clock()

        async def work(uow: UnitOfWork) -> tuple[CompletionRecord, bool]:
            lesson = await uow.lessons.get_by_id(lesson_id)
            if lesson is None or lesson.course_id != course_id:
                raise LessonNotFoundError(f"lesson {lesson_id} not in course {course_id}")

            # Lock first: concurrent completions for one enrollment serialize here
            enrollment = await uow.enrollments.get_for_update(user_id, course_id)
            if enrollment is None or not enrollment.is_active:
                raise NotEnrolledError(f"{user_id} has no active enrollment in {course_id}")

            event, created = await uow.progress.add_if_absent(
                ProgressEvent.new(
                    user_id=user_id,
                    course_id=course_id,
                    lesson_id=lesson_id,
                    completed_at=when,
                )
            )
            if not created:
                # A completion whose issuance failed earlier gets another go
                missing_certificate = (
                    enrollment.has_completed
                    and await uow.certificates.get(user_id, course_id) is None
                )
                record = CompletionRecord(
                    event, EnrollmentProgress.of(enrollment), duplicate=True
                )
                return record, missing_certificate

            touched = dataclasses.replace(enrollment, last_activity_at=when)
            await uow.enrollments.save(touched)
            progress = await self._aggregator.recompute_locked(uow, touched)
            return CompletionRecord(event, progress), False

        record, missing_certificate = await run_in_unit_of_work(
            self._uow_factory, work, operation="record_completion"
        )

        log_extra = {
            "user_id": str(user_id),
            "course_id": str(course_id),
            "lesson_id": str(lesson_id),
        }
        if record.duplicate:
            LEDGER_EVENTS.labels(result="duplicate").inc()
            logger.info("Duplicate completion ignored", extra=log_extra)
            if missing_certificate:
                await self._aggregator.after_commit(user_id, course_id)
            return record

        LEDGER_EVENTS.labels(result="recorded").inc()
        logger.info(
            "Lesson completed, progress %d%%", record.progress.percentage, extra=log_extra
        )
        try:
            if record.progress.transitioned_to_completed:
                await self._aggregator.after_commit(user_id, course_id)
        finally:
            await enqueue_best_effort(
                self._queue,
                ANALYTICS_REFRESH,
                {"reason": "lesson_completed", "course_id": str(course_id)},
            )
        return record

    async def list_events(self, user_id: UUID, course_id: UUID) -> list[ProgressEvent]:
        """The user's ledger for one course, oldest completion first."""

        async def work(uow: UnitOfWork) -> list[ProgressEvent]:
            return await uow.progress.list_for_enrollment(user_id, course_id)

        return await run_in_unit_of_work(self._uow_factory, work, operation="list_events")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

progress_ledger = ProgressLedger(
    default_uow_factory, progress_aggregator, queue=task_queue
)
