from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.domain.models import BlacklistEntry


def _identity_clauses(counterparty_id: str, device_code: str | None, ip_address: str | None) -> list:
    # NULL is a literal key value here, so absent parts must match IS NULL rather than be skipped.
    clauses = [BlacklistEntry.counterparty_id == counterparty_id]
    if device_code is None:
        clauses.append(BlacklistEntry.device_code.is_(None))
    else:
        clauses.append(BlacklistEntry.device_code == device_code)
    if ip_address is None:
        clauses.append(BlacklistEntry.ip_address.is_(None))
    else:
        clauses.append(BlacklistEntry.ip_address == ip_address)
    return clauses


async def get_by_identity(
    session: AsyncSession,
    *,
    counterparty_id: str,
    device_code: str | None,
    ip_address: str | None,
) -> BlacklistEntry | None:
    result = await session.execute(
        select(BlacklistEntry).where(*_identity_clauses(counterparty_id, device_code, ip_address))
    )
    return result.scalar_one_or_none()


async def create_entry(
    session: AsyncSession,
    *,
    counterparty_id: str,
    device_code: str | None,
    ip_address: str | None,
    subject_id: int | None,
    risk_count: int,
    last_risk_time: datetime,
    remark: str,
) -> BlacklistEntry:
    entry = BlacklistEntry(
        counterparty_id=counterparty_id,
        device_code=device_code,
        ip_address=ip_address,
        subject_id=subject_id,
        risk_count=risk_count,
        last_risk_time=last_risk_time,
        remark=remark,
    )
    session.add(entry)
    await session.flush()
    return entry


async def increment_risk(
    session: AsyncSession,
    *,
    counterparty_id: str,
    device_code: str | None,
    ip_address: str | None,
    risk_time: datetime,
) -> int:
    # Single UPDATE so concurrent hits on the same key never lose an increment.
    result = await session.execute(
        update(BlacklistEntry)
        .where(*_identity_clauses(counterparty_id, device_code, ip_address))
        .values(risk_count=BlacklistEntry.risk_count + 1, last_risk_time=risk_time)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_entries(session: AsyncSession, *, counterparty_id: str) -> list[BlacklistEntry]:
    result = await session.execute(
        select(BlacklistEntry).where(BlacklistEntry.counterparty_id == counterparty_id).order_by(BlacklistEntry.id)
    )
    return list(result.scalars().all())
