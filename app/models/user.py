from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

ROLES = ("admin", "instructor", "student")


@dataclass(frozen=True, slots=True)
class User:
    id: UUID
    email: str
    name: str
    role: str  # admin|instructor|student
    created_at: int

    @staticmethod
    def new(*, email: str, name: str, role: str, created_at: int) -> User:
        return User(id=uuid4(), email=email, name=name, role=role, created_at=created_at)
