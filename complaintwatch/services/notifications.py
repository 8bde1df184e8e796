from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.persistence.db import SessionLocal
from complaintwatch.persistence.repos import notifications as notifications_repo
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

PRIORITY_CRITICAL = 1
PRIORITY_HIGH = 2
PRIORITY_MEDIUM = 5
PRIORITY_LOW = 7
# Blacklist alerts sort just behind generic high-priority traffic.
PRIORITY_BLACKLIST = 3

KIND_BLACKLIST = "blacklist"

_TITLES = {
    KIND_BLACKLIST: "New counterparty blacklisted",
}


class NotificationSink:
    """Queues chat notifications in the notification_queue table.

    Delivery happens elsewhere; enqueue failures are logged and swallowed so
    callers never fail because of a notification.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        telemetry: Telemetry | None = None,
        max_retry: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._telemetry = telemetry
        self._max_retry = max_retry

    async def enqueue(self, kind: str, priority: int, payload: dict[str, Any]) -> bool:
        title = _TITLES.get(kind, kind.replace("_", " ").capitalize())
        try:
            async with self._session_factory() as session:
                row = await notifications_repo.enqueue_message(
                    session,
                    title=title,
                    kind=kind,
                    priority=priority,
                    payload=payload,
                    max_retry=self._max_retry,
                )
                await session.commit()
                message_id = row.id
        except SQLAlchemyError as exc:
            if self._telemetry is not None:
                self._telemetry.increment_counter("notifications.enqueue_failed")
            logger.warning("notification_enqueue_failed kind=%s error=%s", kind, exc.__class__.__name__)
            return False
        if self._telemetry is not None:
            self._telemetry.increment_counter("notifications.enqueued")
        logger.info("notification_enqueued kind=%s priority=%s message_id=%s", kind, priority, message_id)
        return True
