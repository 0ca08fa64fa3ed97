from __future__ import annotations

from typing import Literal, Protocol
from uuid import UUID

from app.models.certificate import Certificate

# inserted: the new certificate was stored
# exists: (user_id, course_id) already has a certificate; it is returned
# code_taken: the certificate_code collided with another certificate
InsertOutcome = Literal["inserted", "exists", "code_taken"]


class CertificateRepo(Protocol):
    async def add_if_absent(
        self, certificate: Certificate
    ) -> tuple[Certificate | None, InsertOutcome]: ...
    async def get(self, user_id: UUID, course_id: UUID) -> Certificate | None: ...
    async def get_by_code(self, code: str) -> Certificate | None: ...
    async def list_by_user(self, user_id: UUID) -> list[Certificate]: ...


class InMemoryCertificateRepo:
    """No update or delete methods: issued certificates are immutable."""

    def __init__(self) -> None:
        self._by_pair: dict[tuple[UUID, UUID], Certificate] = {}
        self._by_code: dict[str, Certificate] = {}

    async def add_if_absent(
        self, certificate: Certificate
    ) -> tuple[Certificate | None, InsertOutcome]:
        key = (certificate.user_id, certificate.course_id)
        existing = self._by_pair.get(key)
        if existing is not None:
            return existing, "exists"
        if certificate.certificate_code in self._by_code:
            return None, "code_taken"
        self._by_pair[key] = certificate
        self._by_code[certificate.certificate_code] = certificate
        return certificate, "inserted"

    async def get(self, user_id: UUID, course_id: UUID) -> Certificate | None:
        return self._by_pair.get((user_id, course_id))

    async def get_by_code(self, code: str) -> Certificate | None:
        return self._by_code.get(code)

    async def list_by_user(self, user_id: UUID) -> list[Certificate]:
        certs = [c for c in self._by_pair.values() if c.user_id == user_id]
        return sorted(certs, key=lambda c: (c.issued_at, c.certificate_code))
