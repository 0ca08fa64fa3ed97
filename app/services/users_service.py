from __future__ import annotations

import logging
from collections.abc import Callable
from uuid import UUID

from app.core.clock import utc_now
from app.db.store import uow_factory as default_uow_factory
from app.models.principal import Principal
from app.models.user import ROLES, User
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.errors import PermissionDeniedError
from app.services.retry import run_in_unit_of_work

logger = logging.getLogger(__name__)


class UserValidationError(ValueError):
    pass


class UserAlreadyExistsError(Exception):
    pass


class UserNotFoundError(LookupError):
    pass


def _check_role(role: str) -> None:
    if role not in ROLES:
        raise UserValidationError(f"role must be one of {', '.join(ROLES)}")


class UserDirectory:
    def __init__(
        self, uow_factory: UnitOfWorkFactory, *, clock: Callable[[], int] = utc_now
    ) -> None:
        self._uow_factory = uow_factory
        self._clock = clock

    async def create_user(self, email: str, name: str = "", role: str = "student") -> User:
        email = email.strip().lower()
        if not email:
            logger.warning("Rejected blank email")
            raise UserValidationError("email must be non-empty")
        _check_role(role)

        user = User.new(email=email, name=name.strip(), role=role, created_at=self._clock())

        async def work(uow: UnitOfWork) -> User:
            if await uow.users.get_by_email(email) is not None:
                raise UserAlreadyExistsError(email)
            try:
                await uow.users.add(user)
            except ValueError:
                raise UserAlreadyExistsError(email) from None
            return user

        try:
            created = await run_in_unit_of_work(
                self._uow_factory, work, operation="create_user"
            )
        except UserAlreadyExistsError:
            logger.warning("Rejected duplicate email=%s", email)
            raise
        logger.info("Created user id=%s role=%s", created.id, created.role)
        return created

    async def change_role(self, actor: Principal, user_id: UUID, role: str) -> User:
        """Admin-only role change."""
        if not actor.is_admin():
            logger.warning("Role change denied for actor=%s", actor.user_id)
            raise PermissionDeniedError("only admins can change roles")
        _check_role(role)

        async def work(uow: UnitOfWork) -> User:
            updated = await uow.users.update_role(user_id, role)
            if updated is None:
                raise UserNotFoundError(str(user_id))
            return updated

        updated = await run_in_unit_of_work(
            self._uow_factory, work, operation="change_role"
        )
        logger.info(
            "User %s role changed to %s by %s", user_id, role, actor.user_id
        )
        return updated

    async def get_user(self, user_id: UUID) -> User | None:
        async def work(uow: UnitOfWork) -> User | None:
            return await uow.users.get_by_id(user_id)

        return await run_in_unit_of_work(self._uow_factory, work, operation="get_user")

    async def list_users(self, role: str | None = None) -> list[User]:
        if role is not None:
            _check_role(role)
        async def work(uow: UnitOfWork) -> list[User]:
            return await uow.users.list_all(role)

        return await run_in_unit_of_work(self._uow_factory, work, operation="list_users")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

user_directory = UserDirectory(default_uow_factory)
