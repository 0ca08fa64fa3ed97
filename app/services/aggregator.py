"""Progress aggregator: derive an enrollment's percentage and status.

The ledger is the source of truth; this module is the only writer of
Enrollment.progress_percentage and of the enrolled -> in_progress ->
completed transitions.

Completion is sticky.  Once an enrollment has reached completed it
stays completed with progress pinned at 100, even if lessons are later
added to the course.  Certificates already issued stay valid that way.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from uuid import UUID

from app.core.clock import utc_now
from app.core.metrics import PROGRESS_RECOMPUTES
from app.db.store import uow_factory as default_uow_factory
from app.models.enrollment import Enrollment, EnrollmentProgress
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.certificates import CertificateIssuer, certificate_issuer
from app.services.errors import EnrollmentNotFoundError, ProgressCoreError
from app.services.retry import run_in_unit_of_work
from app.services.task_queue import (
    CERTIFICATE_RECONCILE,
    TaskQueue,
    enqueue_best_effort,
    task_queue,
)

logger = logging.getLogger(__name__)


def completion_percentage(completed: int, total: int) -> int:
    """floor(100 * completed / total), or 0 for a course with no lessons."""
    if total <= 0:
        return 0
    return min(100, (100 * completed) // total)


def apply_progress(
    enrollment: Enrollment, completed: int, total: int, now: int
) -> tuple[Enrollment, EnrollmentProgress]:
    """Return the enrollment as it should be after counting ``completed``.

    Refunded enrollments come back unchanged.
    """
    if not enrollment.is_active:
        return enrollment, EnrollmentProgress.of(enrollment)

    if enrollment.status == "completed":
        updated = dataclasses.replace(enrollment, progress_percentage=100)
        return updated, EnrollmentProgress.of(updated)

    percentage = completion_percentage(completed, total)
    if percentage == 100:
        updated = dataclasses.replace(
            enrollment,
            status="completed",
            progress_percentage=100,
            completed_at=enrollment.completed_at or now,
        )
        return updated, EnrollmentProgress(100, "completed", True)

    status = "in_progress" if completed > 0 else "enrolled"
    updated = dataclasses.replace(
        enrollment, status=status, progress_percentage=percentage
    )
    return updated, EnrollmentProgress.of(updated)


class ProgressAggregator:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        issuer: CertificateIssuer | None = None,
        queue: TaskQueue | None = None,
        clock: Callable[[], int] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._issuer = issuer
        self._queue = queue
        self._clock = clock

    async def recompute(self, user_id: UUID, course_id: UUID) -> EnrollmentProgress:
        """Recompute one enrollment in its own transaction.

        A transition into completed triggers certificate issuance once the
        transaction has committed.
        """

        async def work(uow: UnitOfWork) -> EnrollmentProgress:
            return await self.recompute_in(uow, user_id, course_id)

        progress = await run_in_unit_of_work(
            self._uow_factory, work, operation="recompute"
        )
        if progress.transitioned_to_completed:
            await self.after_commit(user_id, course_id)
        return progress

    async def recompute_in(
        self, uow: UnitOfWork, user_id: UUID, course_id: UUID
    ) -> EnrollmentProgress:
        """Lock the enrollment row in ``uow`` and recompute it."""
        enrollment = await uow.enrollments.get_for_update(user_id, course_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"{user_id} is not enrolled in {course_id}")
        return await self.recompute_locked(uow, enrollment)

    async def recompute_locked(
        self, uow: UnitOfWork, enrollment: Enrollment
    ) -> EnrollmentProgress:
        """Recompute an enrollment whose row lock ``uow`` already holds."""
        if not enrollment.is_active:
            PROGRESS_RECOMPUTES.labels(outcome="skipped").inc()
            return EnrollmentProgress.of(enrollment)

        course = await uow.courses.get_by_id(enrollment.course_id)
        total = course.total_lesson_count if course is not None else 0
        completed = await uow.progress.count_completed(
            enrollment.user_id, enrollment.course_id
        )
        updated, progress = apply_progress(enrollment, completed, total, self._clock())

        if updated == enrollment:
            PROGRESS_RECOMPUTES.labels(outcome="unchanged").inc()
            return progress

        await uow.enrollments.save(updated)
        if progress.transitioned_to_completed:
            PROGRESS_RECOMPUTES.labels(outcome="completed").inc()
            logger.info(
                "Enrollment completed",
                extra={
                    "user_id": str(enrollment.user_id),
                    "course_id": str(enrollment.course_id),
                },
            )
        else:
            PROGRESS_RECOMPUTES.labels(outcome="updated").inc()
        logger.debug(
            "Recomputed progress %d/%d -> %d%% %s",
            completed,
            total,
            progress.percentage,
            progress.status,
        )
        return progress

    async def after_commit(self, user_id: UUID, course_id: UUID) -> None:
        """Hand a committed completed-transition to the certificate issuer.

        The completion is already durable here.  If issuance fails, a
        certificate_reconcile task is queued before the error propagates.
        """
        log_extra = {"user_id": str(user_id), "course_id": str(course_id)}
        if self._issuer is None:
            logger.warning(
                "No certificate issuer attached; completion left for reconcile",
                extra=log_extra,
            )
            await self._queue_reconcile(user_id, course_id, "no_issuer")
            return
        try:
            await self._issuer.on_completion_transition(user_id, course_id)
        except ProgressCoreError as exc:
            logger.warning(
                "Certificate issuance failed (%s); reconcile queued",
                exc.__class__.__name__,
                extra=log_extra,
            )
            await self._queue_reconcile(user_id, course_id, "issuance_failed")
            raise

    async def _queue_reconcile(self, user_id: UUID, course_id: UUID, reason: str) -> None:
        await enqueue_best_effort(
            self._queue,
            CERTIFICATE_RECONCILE,
            {"reason": reason, "user_id": str(user_id), "course_id": str(course_id)},
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

progress_aggregator = ProgressAggregator(
    default_uow_factory, issuer=certificate_issuer, queue=task_queue
)
