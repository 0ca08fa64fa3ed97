from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from app.models.user import User


class UserRepo(Protocol):
    async def get_by_id(self, user_id: UUID) -> User | None: ...
    async def get_by_email(self, email: str) -> User | None: ...
    async def add(self, user: User) -> None: ...
    async def update_role(self, user_id: UUID, role: str) -> User | None: ...
    async def list_all(self, role: str | None = None) -> list[User]: ...


class InMemoryUserRepo:
    def __init__(self) -> None:
        self._by_email: dict[str, User] = {}
        self._by_id: dict[UUID, User] = {}

    async def get_by_id(self, user_id: UUID) -> User | None:
        return self._by_id.get(user_id)

    async def get_by_email(self, email: str) -> User | None:
        return self._by_email.get(email)

    async def add(self, user: User) -> None:
        # Mirrors the unique constraint on users.email
        if user.email in self._by_email:
            raise ValueError("email already exists")
        self._by_email[user.email] = user
        self._by_id[user.id] = user

    async def update_role(self, user_id: UUID, role: str) -> User | None:
        u = self._by_id.get(user_id)
        if u is None:
            return None

        updated = replace(u, role=role)
        self._by_id[user_id] = updated
        self._by_email[updated.email] = updated
        return updated

    async def list_all(self, role: str | None = None) -> list[User]:
        users = sorted(self._by_id.values(), key=lambda u: (u.created_at, u.email))
        if role is None:
            return users
        return [u for u in users if u.role == role]
