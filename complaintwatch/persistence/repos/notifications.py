from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.domain.models import NotificationMessage


async def enqueue_message(
    session: AsyncSession,
    *,
    title: str,
    kind: str,
    priority: int,
    payload: dict[str, Any],
    max_retry: int = 3,
) -> NotificationMessage:
    row = NotificationMessage(
        title=title,
        kind=kind,
        priority=priority,
        status="pending",
        payload_json=payload,
        retry_count=0,
        max_retry=max_retry,
    )
    session.add(row)
    await session.flush()
    return row


async def list_pending(session: AsyncSession, *, kind: str | None = None) -> list[NotificationMessage]:
    stmt = select(NotificationMessage).where(NotificationMessage.status == "pending")
    if kind:
        stmt = stmt.where(NotificationMessage.kind == kind)
    result = await session.execute(stmt.order_by(NotificationMessage.priority, NotificationMessage.id))
    return list(result.scalars().all())
