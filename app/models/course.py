from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

COURSE_STATUSES = ("draft", "published", "archived")


@dataclass(frozen=True, slots=True)
class Course:
    id: UUID
    instructor_id: UUID
    slug: str
    title: str
    status: str = "draft"  # draft|published|archived
    price: Decimal = Decimal("0.00")
    # Derived: recomputed by the catalog whenever lessons are added or removed
    total_lesson_count: int = 0
    created_at: int = 0

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @staticmethod
    def new(
        *,
        instructor_id: UUID,
        slug: str,
        title: str,
        price: Decimal = Decimal("0.00"),
        created_at: int = 0,
    ) -> Course:
        return Course(
            id=uuid4(),
            instructor_id=instructor_id,
            slug=slug,
            title=title,
            price=price,
            created_at=created_at,
        )


@dataclass(frozen=True, slots=True)
class Lesson:
    id: UUID
    course_id: UUID
    position: int
    title: str
    duration_minutes: int = 0

    @staticmethod
    def new(
        *, course_id: UUID, position: int, title: str, duration_minutes: int = 0
    ) -> Lesson:
        return Lesson(
            id=uuid4(),
            course_id=course_id,
            position=position,
            title=title,
            duration_minutes=duration_minutes,
        )


@dataclass(frozen=True, slots=True)
class CourseReview:
    """One rating per (user, course); feeds the average-rating metric."""

    user_id: UUID
    course_id: UUID
    rating: int  # 1..5
    comment: str = ""
    created_at: int = 0
