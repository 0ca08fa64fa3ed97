"""PostgreSQL implementation of CertificateRepo.

Both unique constraints (user/course pair and certificate_code) are
absorbed by ON CONFLICT DO NOTHING; a follow-up read on the pair tells
the two conflicts apart.  No UPDATE statement exists for this table.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import CertificateRow
from app.models.certificate import Certificate
from app.repos.certificate_repo import InsertOutcome


class PgCertificateRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_if_absent(
        self, certificate: Certificate
    ) -> tuple[Certificate | None, InsertOutcome]:
        stmt = (
            insert(CertificateRow)
            .values(
                id=certificate.id,
                user_id=certificate.user_id,
                course_id=certificate.course_id,
                certificate_code=certificate.certificate_code,
                issued_at=certificate.issued_at,
            )
            .on_conflict_do_nothing()
            .returning(CertificateRow.id)
        )
        inserted = (await self._session.execute(stmt)).scalar_one_or_none()
        if inserted is not None:
            return certificate, "inserted"

        existing = await self.get(certificate.user_id, certificate.course_id)
        if existing is not None:
            return existing, "exists"
        return None, "code_taken"

    async def get(self, user_id: UUID, course_id: UUID) -> Certificate | None:
        stmt = select(CertificateRow).where(
            CertificateRow.user_id == user_id,
            CertificateRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_certificate(row)

    async def get_by_code(self, code: str) -> Certificate | None:
        stmt = select(CertificateRow).where(CertificateRow.certificate_code == code)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_certificate(row)

    async def list_by_user(self, user_id: UUID) -> list[Certificate]:
        stmt = (
            select(CertificateRow)
            .where(CertificateRow.user_id == user_id)
            .order_by(CertificateRow.issued_at, CertificateRow.certificate_code)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_certificate(r) for r in rows]


def _row_to_certificate(row: CertificateRow) -> Certificate:
    return Certificate(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        certificate_code=row.certificate_code,
        issued_at=row.issued_at,
    )
