from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.domain.models import Order


async def find_by_order_nos(
    session: AsyncSession,
    *,
    subject_id: int,
    merchant_order_nos: list[str],
    platform_order_nos: list[str],
) -> list[Order]:
    # Match either numbering scheme; a complaint line may only carry one of them.
    clauses = []
    if merchant_order_nos:
        clauses.append(Order.merchant_order_no.in_(merchant_order_nos))
    if platform_order_nos:
        clauses.append(Order.platform_order_no.in_(platform_order_nos))
    if not clauses:
        return []
    stmt = select(Order).where(Order.subject_id == subject_id, or_(*clauses)).order_by(Order.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
