from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from complaintwatch.core.errors import PersistenceFailed
from complaintwatch.domain.models import Complaint, ComplaintDetail
from complaintwatch.persistence.db import SessionLocal
from complaintwatch.persistence.repos import complaints as complaints_repo
from complaintwatch.tests.utils.fakes import seed_subject


def _complaint(task_id: str = "T-100", complainant_id: str = "2088000000000001") -> Complaint:
    return Complaint(
        subject_id=1,
        task_id=task_id,
        provider_complaint_id=100,
        complaint_no="BY120251022AAAA",
        status="WAIT_PROCESS",
        complainant_id=complainant_id,
        complained_at=datetime(2025, 10, 22, 8, 0, tzinfo=timezone.utc),
        agent_id=1,
    )


def _detail(merchant_order_no: str) -> ComplaintDetail:
    return ComplaintDetail(
        merchant_order_no=merchant_order_no,
        platform_order_no=f"2025{merchant_order_no}",
        trade_amount=Decimal("12.50"),
        complaint_amount=Decimal("12.50"),
    )


async def _counts() -> tuple[int, int]:
    async with SessionLocal() as session:
        complaints = (await session.execute(select(func.count(Complaint.id)))).scalar_one()
        details = (await session.execute(select(func.count(ComplaintDetail.id)))).scalar_one()
    return int(complaints), int(details)


@pytest.mark.asyncio
async def test_create_with_details_commits_header_and_lines(db) -> None:
    await seed_subject(subject_id=1)
    async with SessionLocal() as session:
        complaint = await complaints_repo.create_with_details(
            session, _complaint(), [_detail("BY120251022AAAA"), _detail("BY120251022BBBB")]
        )
    assert complaint.id is not None

    async with SessionLocal() as session:
        found = await complaints_repo.get_by_task_id(session, subject_id=1, task_id="T-100")
        assert found is not None
        lines = await complaints_repo.list_details(session, found.id)
    assert [line.merchant_order_no for line in lines] == ["BY120251022AAAA", "BY120251022BBBB"]


@pytest.mark.asyncio
async def test_failed_detail_write_leaves_no_rows(db) -> None:
    await seed_subject(subject_id=1)
    # Duplicate order numbers violate the per-complaint unique key on the second line.
    async with SessionLocal() as session:
        with pytest.raises(PersistenceFailed):
            await complaints_repo.create_with_details(
                session, _complaint(), [_detail("BY120251022AAAA"), _detail("BY120251022AAAA")]
            )
    assert await _counts() == (0, 0)


@pytest.mark.asyncio
async def test_task_id_is_unique_per_subject_only(db) -> None:
    await seed_subject(subject_id=1)
    await seed_subject(subject_id=2, app_id="2021000000000002")
    async with SessionLocal() as session:
        await complaints_repo.create_with_details(session, _complaint(), [_detail("A1")])
    other = _complaint()
    other.subject_id = 2
    async with SessionLocal() as session:
        await complaints_repo.create_with_details(session, other, [_detail("A1")])
    async with SessionLocal() as session:
        with pytest.raises(PersistenceFailed):
            await complaints_repo.create_with_details(session, _complaint(), [_detail("A2")])
    assert await _counts() == (2, 2)

    async with SessionLocal() as session:
        assert await complaints_repo.get_by_task_id(session, subject_id=1, task_id="T-100") is not None
        assert await complaints_repo.get_by_task_id(session, subject_id=3, task_id="T-100") is None


@pytest.mark.asyncio
async def test_count_by_complainant(db) -> None:
    await seed_subject(subject_id=1)
    for task_id in ("T-1", "T-2"):
        async with SessionLocal() as session:
            await complaints_repo.create_with_details(session, _complaint(task_id=task_id), [_detail(task_id)])
    async with SessionLocal() as session:
        await complaints_repo.create_with_details(
            session, _complaint(task_id="T-3", complainant_id="someone-else"), [_detail("T-3")]
        )
    async with SessionLocal() as session:
        assert await complaints_repo.count_by_complainant(session, subject_id=1, complainant_id="2088000000000001") == 2
        assert await complaints_repo.count_by_complainant(session, subject_id=2, complainant_id="2088000000000001") == 0
