"""Demo: a learner works through a four-lesson course and earns a certificate.

Run with:
    python scripts/demo_completion_flow.py

Uses a private in-memory database, so no PostgreSQL or Redis is needed.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from app.repos.unit_of_work import InMemoryDatabase
from app.services.aggregator import ProgressAggregator
from app.services.analytics import AnalyticsRollup
from app.services.catalog import CourseCatalog
from app.services.certificates import CertificateIssuer
from app.services.ledger import ProgressLedger
from app.services.task_queue import InMemoryTaskQueue
from app.services.users_service import UserDirectory


async def main() -> None:
    db = InMemoryDatabase()
    queue = InMemoryTaskQueue()
    issuer = CertificateIssuer(db.unit_of_work)
    aggregator = ProgressAggregator(db.unit_of_work, issuer=issuer)
    ledger = ProgressLedger(db.unit_of_work, aggregator, queue=queue)
    catalog = CourseCatalog(db.unit_of_work, aggregator, queue=queue)
    users = UserDirectory(db.unit_of_work)
    rollup = AnalyticsRollup(db.unit_of_work)

    # ── Seed data ───────────────────────────────────────────────────
    instructor = await users.create_user("ada@example.com", "Ada", role="instructor")
    learner = await users.create_user("lin@example.com", "Lin")
    course = await catalog.create_course(
        instructor.id, "intro-sql", "Intro to SQL", Decimal("49.00")
    )
    lessons = [await catalog.add_lesson(course.id, f"Lesson {n}") for n in range(1, 5)]
    await catalog.set_course_status(course.id, "published")
    await catalog.enroll(learner.id, course.id)
    await catalog.record_payment(learner.id, course.id, "paid")

    # ── Work through the lessons ────────────────────────────────────
    for lesson in lessons:
        record = await ledger.record_completion(learner.id, course.id, lesson.id)
        print(
            f"{lesson.title}: {record.progress.percentage:3d}%  {record.progress.status}"
            f"{'  (completed!)' if record.progress.transitioned_to_completed else ''}"
        )

    again = await ledger.record_completion(learner.id, course.id, lessons[-1].id)
    print(f"Repeat of {lessons[-1].title}: duplicate={again.duplicate}")

    cert = await issuer.get(learner.id, course.id)
    print(f"Certificate: {cert.certificate_code if cert else 'none'}")

    # ── Dashboards ──────────────────────────────────────────────────
    print()
    print((await rollup.export("course_performance", "csv")).decode())
    print(f"{await queue.queue_length('analytics_refresh')} analytics refreshes queued")


if __name__ == "__main__":
    asyncio.run(main())
