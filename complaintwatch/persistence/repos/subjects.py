from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.domain.models import SUBJECT_STATUS_ACTIVE, Subject, SubjectCredential


async def list_eligible_subjects(session: AsyncSession) -> list[Subject]:
    # Active subjects whose four credential blobs are all present.
    stmt = (
        select(Subject)
        .join(SubjectCredential, SubjectCredential.subject_id == Subject.id)
        .where(
            Subject.status == SUBJECT_STATUS_ACTIVE,
            SubjectCredential.app_private_key != "",
            SubjectCredential.app_public_cert != "",
            SubjectCredential.alipay_root_cert != "",
            SubjectCredential.alipay_public_cert != "",
        )
        .order_by(Subject.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_credential(session: AsyncSession, subject_id: int) -> SubjectCredential | None:
    result = await session.execute(
        select(SubjectCredential).where(SubjectCredential.subject_id == subject_id)
    )
    return result.scalar_one_or_none()
