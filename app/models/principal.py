from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity handed in by the caller.

    The identity layer (outside this package) validates tokens and
    sessions; the core only trusts what it receives here.

        user_id: the authenticated user
        role: admin|instructor|student
    """

    user_id: UUID
    role: str

    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_instructor(self) -> bool:
        return self.role == "instructor"

    def is_student(self) -> bool:
        return self.role == "student"
