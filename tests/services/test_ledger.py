"""Lesson-completion ledger: idempotence, validation, the completion scenario."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from app.core.config import SETTINGS
from app.services.aggregator import ProgressAggregator
from app.services.certificates import CertificateIssuer
from app.services.errors import ConcurrencyConflict, LessonNotFoundError, NotEnrolledError
from app.services.ledger import ProgressLedger
from app.services.task_queue import ANALYTICS_REFRESH, CERTIFICATE_RECONCILE
from tests.conftest import (
    create_course,
    create_student,
    enrolled_student,
    flaky_store,
    run,
)


def test_four_lesson_course_reaches_completion_with_one_certificate(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=4)
        partial = [
            await svc.ledger.record_completion(student.id, course.id, lesson.id)
            for lesson in lessons[:3]
        ]
        after_three = await svc.catalog.get_enrollment(student.id, course.id)
        cert_after_three = await svc.issuer.get(student.id, course.id)

        final = await svc.ledger.record_completion(student.id, course.id, lessons[3].id)
        enrollment = await svc.catalog.get_enrollment(student.id, course.id)
        certs = await svc.issuer.list_for_user(student.id)
        return partial, after_three, cert_after_three, final, enrollment, certs

    partial, after_three, cert_after_three, final, enrollment, certs = run(scenario())

    assert [r.progress.percentage for r in partial] == [25, 50, 75]
    assert after_three.status == "in_progress"
    assert after_three.progress_percentage == 75
    assert cert_after_three is None

    assert final.progress.percentage == 100
    assert final.progress.status == "completed"
    assert final.progress.transitioned_to_completed is True
    assert enrollment.completed_at == svc.clock.now
    assert len(certs) == 1


def test_repeated_completion_is_a_no_op(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=4)
        for lesson in lessons:
            await svc.ledger.record_completion(student.id, course.id, lesson.id)
        before = await svc.catalog.get_enrollment(student.id, course.id)
        svc.clock.advance(3600)
        again = await svc.ledger.record_completion(student.id, course.id, lessons[3].id)
        after = await svc.catalog.get_enrollment(student.id, course.id)
        events = await svc.ledger.list_events(student.id, course.id)
        certs = await svc.issuer.list_for_user(student.id)
        return before, again, after, events, certs

    before, again, after, events, certs = run(scenario())

    assert again.duplicate is True
    assert again.progress.percentage == 100
    assert again.progress.status == "completed"
    assert again.progress.transitioned_to_completed is False
    assert after == before
    assert len(events) == 4
    assert len(certs) == 1


def test_duplicate_returns_the_original_event(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        first = await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        svc.clock.advance(60)
        second = await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        return first, second

    first, second = run(scenario())
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.event == first.event
    assert second.progress == first.progress


def test_concurrent_final_lesson_submissions_issue_one_certificate(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        results = await asyncio.gather(
            *(
                svc.ledger.record_completion(student.id, course.id, lessons[1].id)
                for _ in range(5)
            )
        )
        certs = await svc.issuer.list_for_user(student.id)
        events = await svc.ledger.list_events(student.id, course.id)
        return results, certs, events

    results, certs, events = run(scenario())
    assert sum(not r.duplicate for r in results) == 1
    assert sum(r.progress.transitioned_to_completed for r in results) == 1
    assert all(r.progress.percentage == 100 for r in results)
    assert len(certs) == 1
    assert len(events) == 2


def test_concurrent_different_lessons_both_count(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=4)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        await svc.ledger.record_completion(student.id, course.id, lessons[1].id)
        await asyncio.gather(
            svc.ledger.record_completion(student.id, course.id, lessons[2].id),
            svc.ledger.record_completion(student.id, course.id, lessons[3].id),
        )
        enrollment = await svc.catalog.get_enrollment(student.id, course.id)
        certs = await svc.issuer.list_for_user(student.id)
        return enrollment, certs

    enrollment, certs = run(scenario())
    assert enrollment.status == "completed"
    assert enrollment.progress_percentage == 100
    assert len(certs) == 1


def test_completion_without_enrollment_is_rejected(svc) -> None:
    async def scenario():
        course, lessons = await create_course(svc, lessons=2)
        stranger = await create_student(svc)
        await svc.ledger.record_completion(stranger.id, course.id, lessons[0].id)

    with pytest.raises(NotEnrolledError):
        run(scenario())


def test_completion_after_refund_is_rejected(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        await svc.catalog.refund(student.id, course.id)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)

    with pytest.raises(NotEnrolledError):
        run(scenario())


def test_lesson_from_another_course_is_rejected(svc) -> None:
    async def scenario():
        student, course, _ = await enrolled_student(svc, lessons=2)
        _, other_lessons = await create_course(svc, lessons=1)
        await svc.ledger.record_completion(student.id, course.id, other_lessons[0].id)

    with pytest.raises(LessonNotFoundError):
        run(scenario())


def test_unknown_lesson_is_rejected(svc) -> None:
    async def scenario():
        student, course, _ = await enrolled_student(svc, lessons=2)
        await svc.ledger.record_completion(student.id, course.id, uuid.uuid4())

    with pytest.raises(LessonNotFoundError):
        run(scenario())


def test_rejected_completion_writes_nothing(svc) -> None:
    async def scenario():
        course, lessons = await create_course(svc, lessons=2)
        stranger = await create_student(svc)
        with pytest.raises(NotEnrolledError):
            await svc.ledger.record_completion(stranger.id, course.id, lessons[0].id)
        return await svc.ledger.list_events(stranger.id, course.id)

    assert run(scenario()) == []


def test_recorded_completion_queues_analytics_refresh(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        # Drain what course setup queued
        while await svc.queue.dequeue("analytics_refresh"):
            pass
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        task = await svc.queue.dequeue("analytics_refresh")
        remaining = await svc.queue.queue_length("analytics_refresh")
        return course, task, remaining

    course, task, remaining = run(scenario())
    assert task.payload == {"reason": "lesson_completed", "course_id": str(course.id)}
    # Duplicates change nothing, so they queue nothing
    assert remaining == 0


def test_completion_records_last_activity_and_explicit_timestamp(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        record = await svc.ledger.record_completion(
            student.id, course.id, lessons[0].id, completed_at=1_700_000_000
        )
        enrollment = await svc.catalog.get_enrollment(student.id, course.id)
        return record, enrollment

    record, enrollment = run(scenario())
    assert record.event.completed_at == 1_700_000_000
    assert enrollment.last_activity_at == 1_700_000_000


def test_list_events_is_ordered_by_completion_time(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=3)
        for lesson in reversed(lessons):
            svc.clock.advance(10)
            await svc.ledger.record_completion(student.id, course.id, lesson.id)
        return lessons, await svc.ledger.list_events(student.id, course.id)

    lessons, events = run(scenario())
    assert [e.lesson_id for e in events] == [lesson.id for lesson in reversed(lessons)]


# ---- issuance failing after the completing commit ----


def _ledger_with_failing_issuer(svc) -> ProgressLedger:
    """A ledger whose issuer loses every store attempt of one issuance."""
    issuer = CertificateIssuer(
        flaky_store(svc.db, SETTINGS.db_retry_attempts), clock=svc.clock
    )
    aggregator = ProgressAggregator(
        svc.db.unit_of_work, issuer=issuer, queue=svc.queue, clock=svc.clock
    )
    return ProgressLedger(svc.db.unit_of_work, aggregator, queue=svc.queue, clock=svc.clock)


def test_failed_issuance_queues_reconcile_and_analytics_refresh(svc) -> None:
    ledger = _ledger_with_failing_issuer(svc)

    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=2)
        await ledger.record_completion(student.id, course.id, lessons[0].id)
        while await svc.queue.dequeue(ANALYTICS_REFRESH):
            pass
        with pytest.raises(ConcurrencyConflict):
            await ledger.record_completion(student.id, course.id, lessons[1].id)
        return (
            student,
            course,
            await svc.catalog.get_enrollment(student.id, course.id),
            await svc.issuer.get(student.id, course.id),
            await svc.queue.dequeue(CERTIFICATE_RECONCILE),
            await svc.queue.queue_length(ANALYTICS_REFRESH),
        )

    student, course, enrollment, cert, reconcile, refreshes = run(scenario())
    # The completion itself committed
    assert enrollment.status == "completed"
    assert cert is None
    assert reconcile.payload == {
        "reason": "issuance_failed",
        "user_id": str(student.id),
        "course_id": str(course.id),
    }
    assert refreshes == 1


def test_repeating_the_final_lesson_retries_failed_issuance(svc) -> None:
    ledger = _ledger_with_failing_issuer(svc)

    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=1)
        with pytest.raises(ConcurrencyConflict):
            await ledger.record_completion(student.id, course.id, lessons[0].id)
        # The issuer's store has recovered by now
        again = await ledger.record_completion(student.id, course.id, lessons[0].id)
        third = await ledger.record_completion(student.id, course.id, lessons[0].id)
        return again, third, await svc.issuer.list_for_user(student.id)

    again, third, certs = run(scenario())
    assert again.duplicate is True
    assert again.progress.status == "completed"
    assert third.duplicate is True
    assert len(certs) == 1
