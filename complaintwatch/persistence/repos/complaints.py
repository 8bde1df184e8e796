from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.core.errors import PersistenceFailed
from complaintwatch.domain.models import Complaint, ComplaintDetail


logger = logging.getLogger(__name__)


async def get_by_task_id(session: AsyncSession, *, subject_id: int, task_id: str) -> Complaint | None:
    # Dedup lookup; task ids are only unique within one subject.
    result = await session.execute(
        select(Complaint).where(Complaint.subject_id == subject_id, Complaint.task_id == task_id)
    )
    return result.scalar_one_or_none()


async def create_with_details(
    session: AsyncSession,
    complaint: Complaint,
    details: list[ComplaintDetail],
) -> Complaint:
    """Persist a complaint header and all of its lines in one transaction.

    Either everything commits or the session is rolled back and
    ``PersistenceFailed`` is raised, leaving no rows behind.
    """
    subject_id, task_id = complaint.subject_id, complaint.task_id
    try:
        session.add(complaint)
        await session.flush()
        for detail in details:
            detail.complaint_id = complaint.id
        session.add_all(details)
        await session.flush()
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "complaint_persist_failed subject_id=%s task_id=%s error=%s",
            subject_id,
            task_id,
            exc.__class__.__name__,
        )
        raise PersistenceFailed(f"complaint {task_id} not persisted") from exc
    return complaint


async def list_details(session: AsyncSession, complaint_id: int) -> list[ComplaintDetail]:
    result = await session.execute(
        select(ComplaintDetail).where(ComplaintDetail.complaint_id == complaint_id).order_by(ComplaintDetail.id)
    )
    return list(result.scalars().all())


async def count_by_complainant(session: AsyncSession, *, subject_id: int, complainant_id: str) -> int:
    result = await session.execute(
        select(func.count(Complaint.id)).where(
            Complaint.subject_id == subject_id,
            Complaint.complainant_id == complainant_id,
        )
    )
    return int(result.scalar_one())
