from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from app.models.course import Course, CourseReview, Lesson


class CourseRepo(Protocol):
    async def get_by_id(self, course_id: UUID) -> Course | None: ...
    async def get_by_slug(self, slug: str) -> Course | None: ...
    async def add(self, course: Course) -> None: ...
    async def update_status(self, course_id: UUID, status: str) -> Course | None: ...
    async def set_lesson_count(self, course_id: UUID, count: int) -> None: ...
    async def list_all(self, instructor_id: UUID | None = None) -> list[Course]: ...


class LessonRepo(Protocol):
    async def get_by_id(self, lesson_id: UUID) -> Lesson | None: ...
    async def add(self, lesson: Lesson) -> None: ...
    async def delete(self, lesson_id: UUID) -> bool: ...
    async def list_by_course(self, course_id: UUID) -> list[Lesson]: ...
    async def count_by_course(self, course_id: UUID) -> int: ...


class ReviewRepo(Protocol):
    async def get(self, user_id: UUID, course_id: UUID) -> CourseReview | None: ...
    async def upsert(self, review: CourseReview) -> None: ...
    async def list_by_course(self, course_id: UUID) -> list[CourseReview]: ...


class InMemoryCourseRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, Course] = {}
        self._by_slug: dict[str, Course] = {}

    async def get_by_id(self, course_id: UUID) -> Course | None:
        return self._by_id.get(course_id)

    async def get_by_slug(self, slug: str) -> Course | None:
        return self._by_slug.get(slug)

    async def add(self, course: Course) -> None:
        if course.slug in self._by_slug:
            raise ValueError("slug already exists")
        self._by_id[course.id] = course
        self._by_slug[course.slug] = course

    async def update_status(self, course_id: UUID, status: str) -> Course | None:
        return self._replace(course_id, status=status)

    async def set_lesson_count(self, course_id: UUID, count: int) -> None:
        self._replace(course_id, total_lesson_count=count)

    async def list_all(self, instructor_id: UUID | None = None) -> list[Course]:
        courses = sorted(self._by_id.values(), key=lambda c: c.slug)
        if instructor_id is None:
            return courses
        return [c for c in courses if c.instructor_id == instructor_id]

    def _replace(self, course_id: UUID, **changes) -> Course | None:
        c = self._by_id.get(course_id)
        if c is None:
            return None
        updated = replace(c, **changes)
        self._by_id[course_id] = updated
        self._by_slug[updated.slug] = updated
        return updated


class InMemoryLessonRepo:
    def __init__(self) -> None:
        self._store: dict[UUID, Lesson] = {}

    async def get_by_id(self, lesson_id: UUID) -> Lesson | None:
        return self._store.get(lesson_id)

    async def add(self, lesson: Lesson) -> None:
        self._store[lesson.id] = lesson

    async def delete(self, lesson_id: UUID) -> bool:
        return self._store.pop(lesson_id, None) is not None

    async def list_by_course(self, course_id: UUID) -> list[Lesson]:
        lessons = [le for le in self._store.values() if le.course_id == course_id]
        return sorted(lessons, key=lambda le: (le.position, str(le.id)))

    async def count_by_course(self, course_id: UUID) -> int:
        return sum(1 for le in self._store.values() if le.course_id == course_id)


class InMemoryReviewRepo:
    def __init__(self) -> None:
        self._store: dict[tuple[UUID, UUID], CourseReview] = {}

    async def get(self, user_id: UUID, course_id: UUID) -> CourseReview | None:
        return self._store.get((user_id, course_id))

    async def upsert(self, review: CourseReview) -> None:
        self._store[(review.user_id, review.course_id)] = review

    async def list_by_course(self, course_id: UUID) -> list[CourseReview]:
        return [r for r in self._store.values() if r.course_id == course_id]
