from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class Certificate:
    """Issued course-completion certificate.  Immutable once issued."""

    id: UUID
    user_id: UUID
    course_id: UUID
    certificate_code: str
    issued_at: int

    @staticmethod
    def new(
        *,
        user_id: UUID,
        course_id: UUID,
        certificate_code: str,
        issued_at: int,
    ) -> Certificate:
        return Certificate(
            id=uuid4(),
            user_id=user_id,
            course_id=course_id,
            certificate_code=certificate_code,
            issued_at=issued_at,
        )
