from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.core.errors import PersistenceFailed
from complaintwatch.persistence.db import SessionLocal
from complaintwatch.persistence.repos import blacklist as blacklist_repo
from complaintwatch.persistence.repos import complaints as complaints_repo
from complaintwatch.services.directory import TenantRef
from complaintwatch.services.notifications import KIND_BLACKLIST, PRIORITY_BLACKLIST, NotificationSink
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_INCREMENTED = "incremented"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _optional(value: str | None) -> str | None:
    # Empty strings are stored as NULL so they share the absent-value key.
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class BlacklistService:
    """Counterparty blacklist keyed by (counterparty, device, ip).

    The first hit for a key inserts a row and queues a notification; later
    hits only bump ``risk_count`` and ``last_risk_time``.
    """

    def __init__(
        self,
        *,
        sink: NotificationSink,
        telemetry: Telemetry,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._sink = sink
        self._telemetry = telemetry
        self._session_factory = session_factory
        self._clock = clock

    async def _history_count(self, session: AsyncSession, tenant_id: int, counterparty_id: str) -> int:
        try:
            count = await complaints_repo.count_by_complainant(
                session, subject_id=tenant_id, complainant_id=counterparty_id
            )
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("blacklist_history_count_failed tenant_id=%s", tenant_id, exc_info=True)
            return 1
        return max(1, count)

    async def add_to_blacklist(
        self,
        tenant: TenantRef,
        counterparty_id: str,
        device_code: str | None,
        ip_address: str | None,
        complaint_no: str,
    ) -> str:
        device = _optional(device_code)
        ip = _optional(ip_address)
        now = self._clock()
        try:
            async with self._session_factory() as session:
                existing = await blacklist_repo.get_by_identity(
                    session, counterparty_id=counterparty_id, device_code=device, ip_address=ip
                )
                if existing is not None:
                    await blacklist_repo.increment_risk(
                        session, counterparty_id=counterparty_id, device_code=device, ip_address=ip, risk_time=now
                    )
                    await session.commit()
                    return self._incremented(tenant, counterparty_id, complaint_no)

                risk_count = await self._history_count(session, tenant.id, counterparty_id)
                remark = f"Auto-blacklisted by complaint {complaint_no}"
                try:
                    entry = await blacklist_repo.create_entry(
                        session,
                        counterparty_id=counterparty_id,
                        device_code=device,
                        ip_address=ip,
                        subject_id=tenant.id,
                        risk_count=risk_count,
                        last_risk_time=now,
                        remark=remark,
                    )
                    await session.commit()
                except IntegrityError:
                    # Lost an insert race against another worker; count this hit on the winner's row.
                    await session.rollback()
                    await blacklist_repo.increment_risk(
                        session, counterparty_id=counterparty_id, device_code=device, ip_address=ip, risk_time=now
                    )
                    await session.commit()
                    return self._incremented(tenant, counterparty_id, complaint_no)
                entry_id = entry.id
        except SQLAlchemyError as exc:
            self._telemetry.increment_counter("blacklist.failed")
            raise PersistenceFailed(f"blacklist write for {counterparty_id} failed") from exc

        self._telemetry.increment_counter("blacklist.created")
        logger.info(
            "blacklist_created tenant_id=%s counterparty_id=%s ip=%s complaint_no=%s risk_count=%s",
            tenant.id,
            counterparty_id,
            ip or "",
            complaint_no,
            risk_count,
        )
        await self._sink.enqueue(
            KIND_BLACKLIST,
            PRIORITY_BLACKLIST,
            {
                "action": "insert",
                "id": entry_id,
                "counterparty_id": counterparty_id,
                "device_code": device or "",
                "ip_address": ip or "",
                "risk_count": risk_count,
                "last_risk_time": now.isoformat(),
                "remark": remark,
                "complaint_no": complaint_no,
                "subject_id": tenant.id,
                "subject_name": tenant.name,
            },
        )
        return OUTCOME_CREATED

    def _incremented(self, tenant: TenantRef, counterparty_id: str, complaint_no: str) -> str:
        self._telemetry.increment_counter("blacklist.incremented")
        logger.info(
            "blacklist_incremented tenant_id=%s counterparty_id=%s complaint_no=%s",
            tenant.id,
            counterparty_id,
            complaint_no,
        )
        return OUTCOME_INCREMENTED
