from __future__ import annotations

import asyncio
import uuid

import pytest
from prometheus_client import REGISTRY

from app.repos.unit_of_work import InMemoryDatabase, TransientStoreError
from app.services.aggregator import ProgressAggregator
from app.services.analytics import AnalyticsRollup
from app.services.catalog import CourseCatalog
from app.services.certificates import CertificateIssuer
from app.services.errors import ConcurrencyConflict, NotEnrolledError
from app.services.ledger import ProgressLedger
from app.services.retry import run_in_unit_of_work
from app.services.users_service import UserDirectory
from tests.conftest import FailingUnitOfWork, flaky_store


def _retries(operation: str) -> float:
    return REGISTRY.get_sample_value("store_retries_total", {"operation": operation}) or 0.0


def test_transient_error_is_retried_until_success() -> None:
    db = InMemoryDatabase()
    calls = []

    async def work(uow):
        calls.append(uow)
        if len(calls) < 3:
            raise TransientStoreError("serialization failure")
        return "ok"

    before = _retries("flaky")
    result = asyncio.run(
        run_in_unit_of_work(db.unit_of_work, work, operation="flaky", attempts=3)
    )
    assert result == "ok"
    assert len(calls) == 3
    # Each attempt gets a fresh unit of work
    assert len({id(uow) for uow in calls}) == 3
    assert _retries("flaky") == before + 2


def test_exhausted_retries_raise_concurrency_conflict() -> None:
    db = InMemoryDatabase()

    async def work(uow):
        raise TransientStoreError("deadlock detected")

    with pytest.raises(ConcurrencyConflict) as excinfo:
        asyncio.run(
            run_in_unit_of_work(db.unit_of_work, work, operation="stuck", attempts=2)
        )
    assert isinstance(excinfo.value.__cause__, TransientStoreError)


def test_timeout_counts_as_a_failed_attempt() -> None:
    db = InMemoryDatabase()

    async def work(uow):
        await asyncio.sleep(1)

    with pytest.raises(ConcurrencyConflict):
        asyncio.run(
            run_in_unit_of_work(
                db.unit_of_work, work, operation="slow", attempts=1, timeout=0.01
            )
        )


def test_domain_errors_are_not_retried() -> None:
    db = InMemoryDatabase()
    calls = 0

    async def work(uow):
        nonlocal calls
        calls += 1
        raise NotEnrolledError("nope")

    with pytest.raises(NotEnrolledError):
        asyncio.run(
            run_in_unit_of_work(db.unit_of_work, work, operation="domain", attempts=3)
        )
    assert calls == 1


# ---- service reads and snapshot writes go through the same retry loop ----


def _read(service: str, factory):
    a, b = uuid.uuid4(), uuid.uuid4()
    if service == "get_certificate":
        return CertificateIssuer(factory).get(a, b)
    if service == "verify_certificate":
        return CertificateIssuer(factory).verify("CERT-AAAA-AAAA-AAAA")
    if service == "get_enrollment":
        return CourseCatalog(factory, ProgressAggregator(factory)).get_enrollment(a, b)
    if service == "list_events":
        return ProgressLedger(factory, ProgressAggregator(factory)).list_events(a, b)
    return UserDirectory(factory).get_user(a)


@pytest.mark.parametrize(
    "operation",
    ["get_certificate", "verify_certificate", "get_enrollment", "list_events", "get_user"],
)
def test_reads_survive_transient_store_errors(operation: str) -> None:
    before = _retries(operation)
    result = asyncio.run(_read(operation, flaky_store(InMemoryDatabase(), 2)))
    assert result in (None, [])
    assert _retries(operation) == before + 2


def test_snapshot_write_survives_transient_store_errors() -> None:
    db = InMemoryDatabase()
    calls = 0

    def factory():
        nonlocal calls
        calls += 1
        # The live compute gets through; the next two snapshot writes fail
        return FailingUnitOfWork() if calls in (2, 3) else db.unit_of_work()

    before = _retries("analytics_snapshot_write")
    rollup = AnalyticsRollup(factory)

    async def scenario():
        await rollup.refresh("course_performance")
        return await AnalyticsRollup(db.unit_of_work).compute_metric("course_performance")

    result = asyncio.run(scenario())
    assert result.cached is True
    assert _retries("analytics_snapshot_write") == before + 2


def test_snapshot_store_unavailable_raises_concurrency_conflict() -> None:
    rollup = AnalyticsRollup(flaky_store(InMemoryDatabase(), 100))

    with pytest.raises(ConcurrencyConflict):
        asyncio.run(rollup.compute_metric("course_performance"))
    with pytest.raises(ConcurrencyConflict):
        asyncio.run(rollup.invalidate())
