from __future__ import annotations

from typing import Protocol
from uuid import UUID

from app.models.progress import ProgressEvent


class ProgressEventRepo(Protocol):
    async def add_if_absent(self, event: ProgressEvent) -> tuple[ProgressEvent, bool]:
        """Insert unless (user_id, lesson_id) is already on the ledger.

        Returns (stored_event, created).  When created is False the
        returned event is the one that was already there.
        """
        ...

    async def get(self, user_id: UUID, lesson_id: UUID) -> ProgressEvent | None: ...
    async def count_completed(self, user_id: UUID, course_id: UUID) -> int: ...
    async def list_for_enrollment(
        self, user_id: UUID, course_id: UUID
    ) -> list[ProgressEvent]: ...
    async def delete_for_lesson(self, lesson_id: UUID) -> int: ...
    async def delete_for_enrollment(self, user_id: UUID, course_id: UUID) -> int: ...


class InMemoryProgressEventRepo:
    def __init__(self) -> None:
        self._store: dict[tuple[UUID, UUID], ProgressEvent] = {}

    async def add_if_absent(self, event: ProgressEvent) -> tuple[ProgressEvent, bool]:
        key = (event.user_id, event.lesson_id)
        existing = self._store.get(key)
        if existing is not None:
            return existing, False
        self._store[key] = event
        return event, True

    async def get(self, user_id: UUID, lesson_id: UUID) -> ProgressEvent | None:
        return self._store.get((user_id, lesson_id))

    async def count_completed(self, user_id: UUID, course_id: UUID) -> int:
        return len(
            {
                e.lesson_id
                for e in self._store.values()
                if e.user_id == user_id and e.course_id == course_id
            }
        )

    async def list_for_enrollment(
        self, user_id: UUID, course_id: UUID
    ) -> list[ProgressEvent]:
        events = [
            e
            for e in self._store.values()
            if e.user_id == user_id and e.course_id == course_id
        ]
        return sorted(events, key=lambda e: (e.completed_at, str(e.lesson_id)))

    async def delete_for_lesson(self, lesson_id: UUID) -> int:
        keys = [k for k, e in self._store.items() if e.lesson_id == lesson_id]
        for k in keys:
            del self._store[k]
        return len(keys)

    async def delete_for_enrollment(self, user_id: UUID, course_id: UUID) -> int:
        keys = [
            k
            for k, e in self._store.items()
            if e.user_id == user_id and e.course_id == course_id
        ]
        for k in keys:
            del self._store[k]
        return len(keys)
