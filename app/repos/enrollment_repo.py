from __future__ import annotations

import asyncio
from typing import Protocol
from uuid import UUID

from app.models.enrollment import Enrollment


class EnrollmentRepo(Protocol):
    async def get(self, user_id: UUID, course_id: UUID) -> Enrollment | None: ...
    async def get_for_update(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None: ...
    async def add(self, enrollment: Enrollment) -> None: ...
    async def save(self, enrollment: Enrollment) -> None: ...
    async def delete(self, user_id: UUID, course_id: UUID) -> bool: ...
    async def list_by_course(self, course_id: UUID) -> list[Enrollment]: ...
    async def list_by_user(self, user_id: UUID) -> list[Enrollment]: ...
    async def list_completed(self) -> list[Enrollment]: ...


class InMemoryEnrollmentRepo:
    """Dict-backed enrollments with row locks that mimic SELECT ... FOR UPDATE.

    get_for_update() takes a per-row asyncio.Lock and keeps it until the
    owning unit of work ends and calls release_row_locks().  Locks are
    tracked per asyncio task, since one unit of work runs in one task.
    A row's lock is dropped once no task holds or waits on it.
    """

    def __init__(self) -> None:
        self._store: dict[tuple[UUID, UUID], Enrollment] = {}
        self._row_locks: dict[tuple[UUID, UUID], asyncio.Lock] = {}
        self._lock_users: dict[tuple[UUID, UUID], int] = {}
        self._held: dict[asyncio.Task | None, list[tuple[UUID, UUID]]] = {}

    async def get(self, user_id: UUID, course_id: UUID) -> Enrollment | None:
        return self._store.get((user_id, course_id))

    async def get_for_update(
        self, user_id: UUID, course_id: UUID
    ) -> Enrollment | None:
        key = (user_id, course_id)
        lock = self._row_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._drop_user(key)
            raise
        self._held.setdefault(asyncio.current_task(), []).append(key)
        return self._store.get(key)

    def release_row_locks(self) -> None:
        for key in reversed(self._held.pop(asyncio.current_task(), [])):
            self._row_locks[key].release()
            self._drop_user(key)

    def _drop_user(self, key: tuple[UUID, UUID]) -> None:
        remaining = self._lock_users[key] - 1
        if remaining:
            self._lock_users[key] = remaining
        else:
            del self._lock_users[key]
            del self._row_locks[key]

    async def add(self, enrollment: Enrollment) -> None:
        key = (enrollment.user_id, enrollment.course_id)
        if key in self._store:
            raise ValueError("enrollment already exists")
        self._store[key] = enrollment

    async def save(self, enrollment: Enrollment) -> None:
        key = (enrollment.user_id, enrollment.course_id)
        if key not in self._store:
            raise KeyError("enrollment not found")
        self._store[key] = enrollment

    async def delete(self, user_id: UUID, course_id: UUID) -> bool:
        return self._store.pop((user_id, course_id), None) is not None

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]:
        return sorted(
            (e for e in self._store.values() if e.course_id == course_id),
            key=lambda e: (e.enrolled_at, str(e.user_id)),
        )

    async def list_by_user(self, user_id: UUID) -> list[Enrollment]:
        return sorted(
            (e for e in self._store.values() if e.user_id == user_id),
            key=lambda e: (e.enrolled_at, str(e.course_id)),
        )

    async def list_completed(self) -> list[Enrollment]:
        return [e for e in self._store.values() if e.completed_at is not None]
