from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

from app.models.enrollment import EnrollmentProgress


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Append-only ledger entry, the source of truth for learner progress.

    At most one event exists per (user_id, lesson_id).
    """

    id: UUID
    user_id: UUID
    course_id: UUID
    lesson_id: UUID
    completed_at: int

    @staticmethod
    def new(
        *,
        user_id: UUID,
        course_id: UUID,
        lesson_id: UUID,
        completed_at: int,
    ) -> ProgressEvent:
        return ProgressEvent(
            id=uuid4(),
            user_id=user_id,
            course_id=course_id,
            lesson_id=lesson_id,
            completed_at=completed_at,
        )


@dataclass(frozen=True, slots=True)
class CompletionRecord:
    """What the ledger hands back for one completion submission.

    duplicate=True means the lesson was already on the ledger: nothing was
    written and no recompute ran; progress is the enrollment as it stands.
    """

    event: ProgressEvent
    progress: EnrollmentProgress
    duplicate: bool = False
