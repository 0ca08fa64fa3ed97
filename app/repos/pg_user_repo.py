"""PostgreSQL implementation of UserRepo."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import UserRow
from app.models.user import User


class PgUserRepo:
    """Satisfies the UserRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: UUID) -> User | None:
        stmt = select(UserRow).where(UserRow.id == user_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_user(row)

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(UserRow).where(UserRow.email == email)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_user(row)

    async def add(self, user: User) -> None:
        row = UserRow(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            raise ValueError("email already exists") from None

    async def update_role(self, user_id: UUID, role: str) -> User | None:
        stmt = (
            update(UserRow)
            .where(UserRow.id == user_id)
            .values(role=role)
            .returning(UserRow)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_user(row)

    async def list_all(self, role: str | None = None) -> list[User]:
        stmt = select(UserRow).order_by(UserRow.created_at, UserRow.email)
        if role is not None:
            stmt = stmt.where(UserRow.role == role)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_user(r) for r in rows]


def _row_to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name or "",
        role=row.role,
        created_at=row.created_at,
    )
