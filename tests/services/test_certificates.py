from __future__ import annotations

import asyncio
import itertools
import re
import uuid

import pytest
from prometheus_client import REGISTRY

from app.services.certificates import CODE_ALPHABET, generate_certificate_code
from app.services.errors import CertificateNotEligibleError, FatalGenerationError
from tests.conftest import build_services, enrolled_student, run

_CODE_RE = re.compile(rf"^CERT-[{CODE_ALPHABET}]{{4}}-[{CODE_ALPHABET}]{{4}}-[{CODE_ALPHABET}]{{4}}$")


def _collisions() -> float:
    return REGISTRY.get_sample_value("certificate_code_collisions_total") or 0.0


async def _complete(svc, lessons: int = 1):
    student, course, created = await enrolled_student(svc, lessons=lessons)
    for lesson in created:
        await svc.ledger.record_completion(student.id, course.id, lesson.id)
    return student, course


# ---- code generation ----


def test_generated_codes_have_expected_shape() -> None:
    for _ in range(50):
        assert _CODE_RE.match(generate_certificate_code())


def test_alphabet_has_no_ambiguous_symbols() -> None:
    assert len(set(CODE_ALPHABET)) == 32
    for ambiguous in "0O1I":
        assert ambiguous not in CODE_ALPHABET


# ---- issuance ----


def test_issue_is_idempotent(svc) -> None:
    async def scenario():
        student, course = await _complete(svc)
        first = await svc.issuer.get(student.id, course.id)
        again = await svc.issuer.on_completion_transition(student.id, course.id)
        return first, again, await svc.issuer.list_for_user(student.id)

    first, again, certs = run(scenario())
    assert again == first
    assert certs == [first]


def test_racing_issuers_produce_one_certificate(svc) -> None:
    async def scenario():
        student, course, lessons = await enrolled_student(svc, lessons=1)
        # The ledger issues on completion; every later call must get that one back
        await svc.ledger.record_completion(student.id, course.id, lessons[0].id)
        results = await asyncio.gather(
            *(svc.issuer.on_completion_transition(student.id, course.id) for _ in range(8))
        )
        return results, await svc.issuer.list_for_user(student.id)

    results, certs = run(scenario())
    assert len(certs) == 1
    assert {c.certificate_code for c in results} == {certs[0].certificate_code}


def test_issue_refused_before_completion(svc) -> None:
    async def scenario():
        student, course, _ = await enrolled_student(svc, lessons=2)
        await svc.issuer.on_completion_transition(student.id, course.id)

    with pytest.raises(CertificateNotEligibleError):
        run(scenario())


def test_issue_refused_without_enrollment(svc) -> None:
    with pytest.raises(CertificateNotEligibleError):
        run(svc.issuer.on_completion_transition(uuid.uuid4(), uuid.uuid4()))


def test_code_collision_regenerates() -> None:
    codes = iter(["CERT-AAAA-AAAA-AAAA", "CERT-AAAA-AAAA-AAAA", "CERT-BBBB-BBBB-BBBB"])
    svc = build_services(code_generator=lambda: next(codes))
    before = _collisions()

    async def scenario():
        a, course_a = await _complete(svc)
        b, course_b = await _complete(svc)
        return (
            await svc.issuer.get(a.id, course_a.id),
            await svc.issuer.get(b.id, course_b.id),
        )

    cert_a, cert_b = run(scenario())
    assert cert_a.certificate_code == "CERT-AAAA-AAAA-AAAA"
    assert cert_b.certificate_code == "CERT-BBBB-BBBB-BBBB"
    assert _collisions() == before + 1


def test_code_space_exhaustion_is_fatal() -> None:
    svc = build_services(
        code_generator=lambda: "CERT-AAAA-AAAA-AAAA", max_code_attempts=3
    )

    async def scenario():
        await _complete(svc)
        with pytest.raises(FatalGenerationError):
            await _complete(svc)

    run(scenario())


def test_failed_issuance_leaves_completion_for_reconcile() -> None:
    codes = itertools.chain(["CERT-AAAA-AAAA-AAAA"] * 4, ["CERT-CCCC-CCCC-CCCC"])
    svc = build_services(code_generator=lambda: next(codes), max_code_attempts=3)

    async def scenario():
        await _complete(svc)
        with pytest.raises(FatalGenerationError):
            await _complete(svc)
        issued = await svc.issuer.reconcile_missing()
        return issued

    issued = run(scenario())
    assert [c.certificate_code for c in issued] == ["CERT-CCCC-CCCC-CCCC"]


# ---- lookups ----


def test_verify_accepts_lowercase_code(svc) -> None:
    async def scenario():
        student, course = await _complete(svc)
        cert = await svc.issuer.get(student.id, course.id)
        found = await svc.issuer.verify(f"  {cert.certificate_code.lower()} ")
        missing = await svc.issuer.verify("CERT-ZZZZ-ZZZZ-ZZZZ")
        return cert, found, missing

    cert, found, missing = run(scenario())
    assert found == cert
    assert missing is None


def test_certificate_survives_removal_of_enrollment(svc) -> None:
    async def scenario():
        student, course = await _complete(svc)
        await svc.catalog.remove_enrollment(student.id, course.id)
        return await svc.issuer.get(student.id, course.id)

    assert run(scenario()) is not None


def test_reconcile_with_nothing_missing_issues_nothing(svc) -> None:
    async def scenario():
        await _complete(svc)
        return await svc.issuer.reconcile_missing()

    assert run(scenario()) == []


def test_conflict_without_a_stored_row_is_an_error(svc, monkeypatch: pytest.MonkeyPatch) -> None:
    async def lost_row(candidate):
        return None, "exists"

    async def scenario():
        student, course = await _complete(svc)
        monkeypatch.setattr(svc.db.certificates, "add_if_absent", lost_row)
        await svc.issuer.on_completion_transition(student.id, course.id)

    with pytest.raises(RuntimeError, match="reported but not returned"):
        run(scenario())
