from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

ENROLLMENT_STATUSES = ("enrolled", "in_progress", "completed", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "free")


@dataclass(frozen=True, slots=True)
class Enrollment:
    """A user's registration in a course, carrying derived progress state.

    progress_percentage and status are written only by the progress
    aggregator (and refund).  completed_at is set once, on the first
    transition into completed, and never cleared.
    """

    user_id: UUID
    course_id: UUID
    enrolled_at: int
    status: str = "enrolled"  # enrolled|in_progress|completed|refunded
    progress_percentage: int = 0
    payment_status: str = "pending"  # pending|paid|failed|refunded|free
    payment_amount: Decimal = Decimal("0.00")
    completed_at: int | None = None
    last_activity_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status != "refunded"

    @property
    def has_completed(self) -> bool:
        """True once the enrollment has ever reached completed."""
        return self.completed_at is not None


@dataclass(frozen=True, slots=True)
class EnrollmentProgress:
    """Result of one aggregator pass over an enrollment."""

    percentage: int
    status: str
    transitioned_to_completed: bool = False

    @staticmethod
    def of(enrollment: Enrollment) -> EnrollmentProgress:
        return EnrollmentProgress(
            percentage=enrollment.progress_percentage,
            status=enrollment.status,
        )
