from __future__ import annotations

import uuid

import pytest

from app.models.principal import Principal
from app.models.user import User
from app.services import users_service
from app.services.errors import PermissionDeniedError
from tests.conftest import run


def test_create_user_defaults_to_student(svc) -> None:
    user = run(svc.users.create_user("new@example.com", "New"))
    assert user.role == "student"
    assert user.created_at == svc.clock.now
    assert run(svc.users.get_user(user.id)) == user


def test_create_user_rejects_duplicate_email(svc) -> None:
    run(svc.users.create_user("dupe@example.com"))

    with pytest.raises(users_service.UserAlreadyExistsError):
        run(svc.users.create_user("dupe@example.com"))


def test_create_user_rejects_blank_email(svc) -> None:
    with pytest.raises(users_service.UserValidationError):
        run(svc.users.create_user("   "))


def test_create_user_rejects_unknown_role(svc) -> None:
    with pytest.raises(users_service.UserValidationError, match="role"):
        run(svc.users.create_user("x@example.com", role="superuser"))


# ---- email normalization ----


def test_create_user_lowercases_email(svc) -> None:
    user = run(svc.users.create_user("LOUD@EXAMPLE.COM"))
    assert user.email == "loud@example.com"


def test_create_user_strips_whitespace_from_email(svc) -> None:
    user = run(svc.users.create_user("  padded@example.com  "))
    assert user.email == "padded@example.com"


def test_create_user_rejects_empty_string(svc) -> None:
    with pytest.raises(users_service.UserValidationError, match="non-empty"):
        run(svc.users.create_user(""))


def test_create_user_rejects_case_variant_duplicate(svc) -> None:
    run(svc.users.create_user("unique@example.com"))
    with pytest.raises(users_service.UserAlreadyExistsError):
        run(svc.users.create_user("UNIQUE@EXAMPLE.COM"))


# ---- roles ----


def test_admin_can_change_role(svc) -> None:
    async def scenario():
        admin = await svc.users.create_user("admin@example.com", role="admin")
        user = await svc.users.create_user("promote@example.com")
        return await svc.users.change_role(
            Principal(admin.id, "admin"), user.id, "instructor"
        )

    assert run(scenario()).role == "instructor"


def test_non_admin_cannot_change_role(svc) -> None:
    async def scenario():
        instructor = await svc.users.create_user("t@example.com", role="instructor")
        await svc.users.change_role(
            Principal(instructor.id, "instructor"), instructor.id, "admin"
        )

    with pytest.raises(PermissionDeniedError):
        run(scenario())


def test_change_role_of_unknown_user(svc) -> None:
    admin = Principal(uuid.uuid4(), "admin")
    with pytest.raises(users_service.UserNotFoundError):
        run(svc.users.change_role(admin, uuid.uuid4(), "student"))


def test_change_role_rejects_unknown_role(svc) -> None:
    admin = Principal(uuid.uuid4(), "admin")
    with pytest.raises(users_service.UserValidationError):
        run(svc.users.change_role(admin, uuid.uuid4(), "owner"))


# ---- listing ----


def test_list_users_filters_by_role_in_signup_order(svc) -> None:
    async def scenario():
        first = await svc.users.create_user("b@example.com")
        svc.clock.advance(1)
        await svc.users.create_user("teach@example.com", role="instructor")
        svc.clock.advance(1)
        second = await svc.users.create_user("a@example.com")
        return first, second, await svc.users.list_users("student"), await svc.users.list_users()

    first, second, students, everyone = run(scenario())
    assert [u.id for u in students] == [first.id, second.id]
    assert len(everyone) == 3


def test_list_users_rejects_unknown_role(svc) -> None:
    with pytest.raises(users_service.UserValidationError):
        run(svc.users.list_users("robot"))


# ---- User dataclass ----


def test_user_dataclass_is_frozen() -> None:
    user = User.new(email="frozen@example.com", name="", role="student", created_at=0)
    with pytest.raises(AttributeError):
        user.email = "mutated@example.com"  # type: ignore[misc]
