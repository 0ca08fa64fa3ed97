"""Certificate issuance: exactly one certificate per completed enrollment.

Two recomputes racing on the same enrollment may both reach the issuer.
Neither takes a lock; the (user_id, course_id) unique constraint decides
the winner and the loser gets the winner's certificate back.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from uuid import UUID

from app.core.clock import utc_now
from app.core.config import SETTINGS
from app.core.metrics import CERTIFICATE_CODE_COLLISIONS, CERTIFICATES
from app.db.store import uow_factory as default_uow_factory
from app.models.certificate import Certificate
from app.models.enrollment import Enrollment
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.errors import CertificateNotEligibleError, FatalGenerationError
from app.services.retry import run_in_unit_of_work

logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes get read aloud and typed in by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_PREFIX = "CERT"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4


def generate_certificate_code() -> str:
    """Random code like ``CERT-7KQ2-M9XD-4HPA`` (60 bits of entropy)."""
    groups = (
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH))
        for _ in range(CODE_GROUPS)
    )
    return "-".join((CODE_PREFIX, *groups))


def normalize_certificate_code(code: str) -> str:
    return code.strip().upper()


class CertificateIssuer:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        code_generator: Callable[[], str] = generate_certificate_code,
        max_code_attempts: int | None = None,
        clock: Callable[[], int] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._code_generator = code_generator
        self._max_code_attempts = (
            max_code_attempts
            if max_code_attempts is not None
            else SETTINGS.certificate_code_attempts
        )
        self._clock = clock

    async def on_completion_transition(
        self, user_id: UUID, course_id: UUID
    ) -> Certificate:
        """Issue the certificate for a completed enrollment, or return it.

        Raises CertificateNotEligibleError when the enrollment never
        completed and FatalGenerationError when every generated code
        collided.
        """

        async def work(uow: UnitOfWork) -> Certificate:
            return await self.issue_in(uow, user_id, course_id)

        return await run_in_unit_of_work(
            self._uow_factory, work, operation="issue_certificate"
        )

    async def issue_in(
        self, uow: UnitOfWork, user_id: UUID, course_id: UUID
    ) -> Certificate:
        enrollment = await uow.enrollments.get(user_id, course_id)
        if enrollment is None or not enrollment.has_completed:
            raise CertificateNotEligibleError(
                f"enrollment {user_id}/{course_id} has not completed"
            )

        for _ in range(self._max_code_attempts):
            candidate = Certificate.new(
                user_id=user_id,
                course_id=course_id,
                certificate_code=self._code_generator(),
                issued_at=self._clock(),
            )
            stored, outcome = await uow.certificates.add_if_absent(candidate)
            if outcome == "inserted":
                CERTIFICATES.labels(result="issued").inc()
                logger.info(
                    "Issued certificate %s",
                    candidate.certificate_code,
                    extra={"user_id": str(user_id), "course_id": str(course_id)},
                )
                return candidate
            if outcome == "exists":
                if stored is None:
                    raise RuntimeError(
                        f"certificate for {user_id}/{course_id} reported but not returned"
                    )
                CERTIFICATES.labels(result="already_issued").inc()
                return stored
            CERTIFICATE_CODE_COLLISIONS.inc()
            logger.warning("Certificate code collision, regenerating")

        raise FatalGenerationError(
            f"no free certificate code after {self._max_code_attempts} attempts"
        )

    async def get(self, user_id: UUID, course_id: UUID) -> Certificate | None:
        async def work(uow: UnitOfWork) -> Certificate | None:
            return await uow.certificates.get(user_id, course_id)

        return await run_in_unit_of_work(
            self._uow_factory, work, operation="get_certificate"
        )

    async def verify(self, code: str) -> Certificate | None:
        """Look up a certificate by its public code (case-insensitive)."""
        normalized = normalize_certificate_code(code)

        async def work(uow: UnitOfWork) -> Certificate | None:
            return await uow.certificates.get_by_code(normalized)

        return await run_in_unit_of_work(
            self._uow_factory, work, operation="verify_certificate"
        )

    async def list_for_user(self, user_id: UUID) -> list[Certificate]:
        async def work(uow: UnitOfWork) -> list[Certificate]:
            return await uow.certificates.list_by_user(user_id)

        return await run_in_unit_of_work(
            self._uow_factory, work, operation="list_certificates"
        )

    async def reconcile_missing(self) -> list[Certificate]:
        """Issue certificates for completed enrollments that have none.

        Covers a crash between the completing commit and issuance.
        """
        async def find_missing(uow: UnitOfWork) -> list[Enrollment]:
            return [
                e
                for e in await uow.enrollments.list_completed()
                if await uow.certificates.get(e.user_id, e.course_id) is None
            ]

        missing = await run_in_unit_of_work(
            self._uow_factory, find_missing, operation="reconcile_certificates"
        )

        issued = []
        for enrollment in missing:
            cert = await self.on_completion_transition(
                enrollment.user_id, enrollment.course_id
            )
            issued.append(cert)
        if issued:
            logger.info("Reconciled %d missing certificates", len(issued))
        return issued


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

certificate_issuer = CertificateIssuer(default_uow_factory)
