from __future__ import annotations

import dataclasses
import uuid
from decimal import Decimal

import pytest

from app.models.enrollment import Enrollment
from app.services.aggregator import apply_progress, completion_percentage
from app.services.errors import EnrollmentNotFoundError
from tests.conftest import enrolled_student, run

# ---- percentage rule ----


@pytest.mark.parametrize(
    ("completed", "total", "expected"),
    [
        (0, 4, 0),
        (1, 3, 33),
        (2, 3, 66),
        (3, 4, 75),
        (4, 4, 100),
        (1, 7, 14),
        (0, 0, 0),
        (5, 0, 0),
    ],
)
def test_completion_percentage_floors(completed: int, total: int, expected: int) -> None:
    assert completion_percentage(completed, total) == expected


def _enrollment(**changes) -> Enrollment:
    base = Enrollment(user_id=uuid.uuid4(), course_id=uuid.uuid4(), enrolled_at=100)
    return dataclasses.replace(base, **changes)


# ---- state transitions (pure) ----


def test_no_lessons_completed_stays_enrolled() -> None:
    updated, progress = apply_progress(_enrollment(), 0, 4, now=500)
    assert updated.status == "enrolled"
    assert progress.percentage == 0
    assert progress.transitioned_to_completed is False


def test_partial_progress_is_in_progress() -> None:
    updated, progress = apply_progress(_enrollment(), 2, 4, now=500)
    assert updated.status == "in_progress"
    assert updated.progress_percentage == 50
    assert progress.status == "in_progress"


def test_reaching_all_lessons_transitions_once() -> None:
    updated, progress = apply_progress(_enrollment(status="in_progress"), 4, 4, now=500)
    assert updated.status == "completed"
    assert updated.completed_at == 500
    assert progress.transitioned_to_completed is True

    again, progress2 = apply_progress(updated, 4, 4, now=900)
    assert again == updated
    assert progress2.transitioned_to_completed is False


def test_completed_is_sticky_when_lessons_are_added() -> None:
    done = _enrollment(status="completed", progress_percentage=100, completed_at=500)
    updated, progress = apply_progress(done, 4, 5, now=900)
    assert updated.status == "completed"
    assert updated.progress_percentage == 100
    assert updated.completed_at == 500
    assert progress.transitioned_to_completed is False


def test_empty_course_never_completes() -> None:
    updated, progress = apply_progress(_enrollment(), 0, 0, now=500)
    assert updated.status == "enrolled"
    assert progress.percentage == 0


def test_refunded_enrollment_is_left_alone() -> None:
    refunded = _enrollment(status="refunded", progress_percentage=40)
    updated, progress = apply_progress(refunded, 4, 4, now=500)
    assert updated == refunded
    assert progress.status == "refunded"
    assert progress.percentage == 40


# ---- recompute against the store ----


def test_recompute_is_stable_without_new_events(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=3)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        first = await svc.aggregator.recompute(student.id, course.id)
        second = await svc.aggregator.recompute(student.id, course.id)
        return first, second

    first, second = run(scenario())
    assert first == second
    assert first.percentage == 33
    assert first.status == "in_progress"


def test_recompute_unknown_enrollment_raises(svc) -> None:
    with pytest.raises(EnrollmentNotFoundError):
        run(svc.aggregator.recompute(uuid.uuid4(), uuid.uuid4()))


def test_recompute_issues_certificate_on_transition(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        await svc.ledger.record_completion(student.id, course.id, lessons[1].id)
        return await svc.issuer.get(student.id, course.id)

    cert = run(scenario())
    assert cert is not None
    assert cert.certificate_code.startswith("CERT-")


def test_completed_enrollment_keeps_invariant(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(
            svc, lessons=2, price=Decimal("10.00")
        )
        for lesson in lessons:
            await svc.ledger.record_completion(student.id, course.id, lesson.id)
        return await svc.catalog.get_enrollment(student.id, course.id)

    enrollment = run(scenario())
    assert enrollment.status == "completed"
    assert enrollment.progress_percentage == 100
    assert enrollment.completed_at is not None
