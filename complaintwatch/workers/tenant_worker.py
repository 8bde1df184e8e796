from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from complaintwatch.core.config import PROVIDER_MAX_PAGE_SIZE, Settings
from complaintwatch.core.errors import (
    ComplaintWatchError,
    CoordinationStoreError,
    IncompleteCredential,
    LockLost,
    NoOrderLines,
    WorkerFault,
)
from complaintwatch.domain.models import Complaint, ComplaintDetail, Order
from complaintwatch.persistence.db import SessionLocal
from complaintwatch.persistence.repos import complaints as complaints_repo
from complaintwatch.persistence.repos import orders as orders_repo
from complaintwatch.providers.complaints.base import (
    PROVIDER_TZ,
    ComplaintDetailResult,
    ComplaintListItem,
    ComplaintProvider,
    QueryWindow,
    parse_provider_time,
)
from complaintwatch.services.blacklist import BlacklistService
from complaintwatch.services.coordination_lock import CoordinationLock, LockHandle
from complaintwatch.services.credential_cache import CredentialCache
from complaintwatch.services.directory import CREDENTIAL_FIELDS, TenantDirectory, TenantRef
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

# Order numbers minted by agents look like BY<agent id><yyyymmdd>...
AGENT_ORDER_PATTERN = re.compile(r"^BY(\d+)(20\d{6})")
AGENT_ORDER_MIN_LENGTH = 12

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_CONTENDED = "contended"


def extract_agent_id(order_no: str) -> int:
    if not order_no or len(order_no) < AGENT_ORDER_MIN_LENGTH:
        return 0
    match = AGENT_ORDER_PATTERN.match(order_no)
    if match is None:
        return 0
    return int(match.group(1))


class WorkerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class WorkerConfig:
    fetch_interval_s: float = 300.0
    tick_timeout_s: float = 60.0
    query_days_back: int = 10
    page_size: int = PROVIDER_MAX_PAGE_SIZE
    lock_key_prefix: str = "complaint:lock:"
    lock_weight: int = 30
    restartable: bool = True
    restart_backoff_s: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            fetch_interval_s=float(settings.fetch_interval_s),
            tick_timeout_s=float(settings.tick_timeout_s),
            query_days_back=int(settings.query_days_back),
            page_size=max(1, min(int(settings.page_size), PROVIDER_MAX_PAGE_SIZE)),
            lock_key_prefix=settings.lock_key_prefix,
            lock_weight=int(settings.lock_default_weight),
            restartable=bool(settings.worker_restartable),
            restart_backoff_s=float(settings.worker_restart_backoff_s),
        )


@dataclass
class TickSummary:
    pages: int = 0
    seen: int = 0
    processed: int = 0
    duplicates: int = 0
    contended: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class BlacklistTarget:
    counterparty_id: str
    ip_address: str = ""


def _best_ip(orders: list[Order]) -> str:
    # Pay-time IP wins over first-open IP across all of the buyer's orders.
    for order in orders:
        if order.pay_ip:
            return order.pay_ip
    for order in orders:
        if order.first_open_ip:
            return order.first_open_ip
    return ""


def build_complaint(
    tenant: TenantRef,
    item: ComplaintListItem,
    detail: ComplaintDetailResult,
    *,
    now: datetime,
) -> tuple[Complaint, list[ComplaintDetail]]:
    if not detail.order_lines or not detail.order_lines[0].merchant_order_no:
        raise NoOrderLines(item.task_id)
    complaint_no = detail.order_lines[0].merchant_order_no
    complaint = Complaint(
        subject_id=tenant.id,
        task_id=item.task_id,
        provider_complaint_id=item.complaint_id,
        complaint_no=complaint_no,
        status=detail.status or item.status,
        complainant_id=detail.complainant_id or item.complainant_id,
        complainant_name=detail.complainant_name,
        complaint_reason=detail.reason,
        complained_at=parse_provider_time(detail.gmt_create or item.gmt_create) or now,
        processed_at=parse_provider_time(detail.gmt_modified or item.gmt_modified),
        agent_id=extract_agent_id(complaint_no),
    )
    details: list[ComplaintDetail] = []
    seen: set[str] = set()
    for line in detail.order_lines:
        if not line.merchant_order_no or line.merchant_order_no in seen:
            continue
        seen.add(line.merchant_order_no)
        details.append(
            ComplaintDetail(
                merchant_order_no=line.merchant_order_no,
                platform_order_no=line.platform_order_no,
                trade_amount=line.amount,
                complaint_amount=line.complaint_amount,
                agent_id=extract_agent_id(line.merchant_order_no),
                is_pushed=False,
            )
        )
    return complaint, details


class TenantWorker:
    """Polling loop for one tenant.

    Each tick lists the trailing complaint window page by page and runs every
    complaint through lock, dedup, detail fetch, persist and blacklist. Any
    failure inside a tick abandons that tick only; a fault outside the tick
    boundary ends ``run()`` with a ``WorkerFault`` for the supervisor.
    """

    def __init__(
        self,
        tenant: TenantRef,
        *,
        directory: TenantDirectory,
        cache: CredentialCache,
        lock: CoordinationLock,
        blacklist: BlacklistService,
        telemetry: Telemetry,
        config: WorkerConfig,
        stop: asyncio.Event | None = None,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        clock: Callable[[], datetime] = lambda: datetime.now(PROVIDER_TZ),
    ) -> None:
        self.tenant = tenant
        self._directory = directory
        self._cache = cache
        self._lock = lock
        self._blacklist = blacklist
        self._telemetry = telemetry
        self._config = config
        self._stop = stop if stop is not None else asyncio.Event()
        self._session_factory = session_factory
        self._clock = clock
        self.state = WorkerState.IDLE
        self.ticks = 0
        self.last_tick_at: datetime | None = None
        self.last_summary: TickSummary | None = None
        self.last_error: str | None = None

    def stop(self) -> None:
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> WorkerFault | None:
        logger.info("tenant_worker_started tenant_id=%s app_id=%s", self.tenant.id, self.tenant.app_id)
        try:
            while not self._stop.is_set():
                await self._run_tick()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._config.fetch_interval_s)
                except asyncio.TimeoutError:
                    pass
        except Exception as exc:  # noqa: BLE001 - converted into a fault for the supervisor.
            self.state = WorkerState.CRASHED
            self.last_error = f"{type(exc).__name__}: {exc}"
            self._telemetry.increment_counter("worker.crashed")
            logger.exception("tenant worker crashed tenant_id=%s", self.tenant.id)
            return WorkerFault(tenant_id=self.tenant.id, error=exc)
        self.state = WorkerState.STOPPED
        logger.info("tenant_worker_stopped tenant_id=%s ticks=%s", self.tenant.id, self.ticks)
        return None

    async def _run_tick(self) -> None:
        self.ticks += 1
        self.last_tick_at = self._clock()
        try:
            summary = await asyncio.wait_for(self.tick(), timeout=self._config.tick_timeout_s)
        except asyncio.TimeoutError:
            self.state = WorkerState.IDLE
            self.last_error = "tick deadline exceeded"
            self._telemetry.increment_counter("worker.tick_timeout")
            logger.warning(
                "tenant_tick_timeout tenant_id=%s timeout_s=%s", self.tenant.id, self._config.tick_timeout_s
            )
            return
        except ComplaintWatchError as exc:
            self.state = WorkerState.IDLE
            self.last_error = f"{type(exc).__name__}: {exc}"
            self._telemetry.increment_counter("worker.tick_failed")
            logger.warning("tenant_tick_failed tenant_id=%s error=%s", self.tenant.id, self.last_error)
            return
        except Exception as exc:  # noqa: BLE001 - an unexpected fault abandons this tick only.
            self.state = WorkerState.IDLE
            self.last_error = f"{type(exc).__name__}: {exc}"
            self._telemetry.increment_counter("worker.tick_crashed")
            logger.exception("tenant_tick_crashed tenant_id=%s", self.tenant.id)
            return
        self.last_summary = summary
        self.last_error = None
        self._telemetry.increment_counter("worker.tick_ok")
        logger.info(
            "tenant_tick_done tenant_id=%s pages=%s seen=%s processed=%s duplicates=%s contended=%s skipped=%s failed=%s",
            self.tenant.id,
            summary.pages,
            summary.seen,
            summary.processed,
            summary.duplicates,
            summary.contended,
            summary.skipped,
            summary.failed,
        )

    async def tick(self) -> TickSummary:
        summary = TickSummary()
        self.state = WorkerState.FETCHING
        credential = await self._directory.get_credential(self.tenant.id)
        if credential is None:
            raise IncompleteCredential(self.tenant.id, list(CREDENTIAL_FIELDS))
        client = await self._cache.obtain(self.tenant, credential)
        window = QueryWindow.trailing(now=self._clock(), days_back=self._config.query_days_back)
        page_size = self._config.page_size
        page = 1
        while not self._stop.is_set():
            self.state = WorkerState.FETCHING
            result = await client.list_complaints(window, page, page_size)
            summary.pages += 1
            self.state = WorkerState.PROCESSING
            for item in result.items:
                if self._stop.is_set():
                    break
                await self._handle_item(client, item, summary)
            if len(result.items) < page_size:
                break
            page += 1
        self.state = WorkerState.IDLE
        return summary

    async def _handle_item(self, client: ComplaintProvider, item: ComplaintListItem, summary: TickSummary) -> None:
        summary.seen += 1
        if not item.task_id:
            summary.skipped += 1
            logger.debug("complaint_skipped_no_task_id tenant_id=%s complaint_id=%s", self.tenant.id, item.complaint_id)
            return
        if item.complaint_id == 0:
            logger.warning("complaint_id_zero tenant_id=%s task_id=%s", self.tenant.id, item.task_id)
        try:
            outcome = await self.process_complaint(client, item)
        except ComplaintWatchError as exc:
            summary.failed += 1
            self._telemetry.increment_counter("complaints.failed")
            logger.warning(
                "complaint_failed tenant_id=%s task_id=%s lock_key=%s error=%s: %s",
                self.tenant.id,
                item.task_id,
                self._lock_key(item.task_id),
                type(exc).__name__,
                exc,
            )
            return
        except Exception:  # noqa: BLE001 - one bad complaint must not end the tick.
            summary.failed += 1
            self._telemetry.increment_counter("complaints.failed")
            logger.exception(
                "complaint pipeline crashed tenant_id=%s task_id=%s lock_key=%s",
                self.tenant.id,
                item.task_id,
                self._lock_key(item.task_id),
            )
            return
        if outcome == OUTCOME_PROCESSED:
            summary.processed += 1
        elif outcome == OUTCOME_DUPLICATE:
            summary.duplicates += 1
        elif outcome == OUTCOME_CONTENDED:
            summary.contended += 1
        self._telemetry.increment_counter(f"complaints.{outcome}")

    def _lock_key(self, task_id: str) -> str:
        return f"{self._config.lock_key_prefix}{task_id}"

    async def process_complaint(self, client: ComplaintProvider, item: ComplaintListItem) -> str:
        key = self._lock_key(item.task_id)
        handle = await self._lock.acquire(key, self._config.lock_weight)
        if handle is None:
            # Someone else owns this complaint right now.
            return OUTCOME_CONTENDED
        renew_stop = asyncio.Event()
        renew_task = asyncio.create_task(self._lock.auto_renew(handle, renew_stop))
        try:
            return await self._ingest(client, item, handle)
        finally:
            renew_stop.set()
            await self._finish_renewal(renew_task)
            try:
                await self._lock.release(handle)
            except CoordinationStoreError as exc:
                logger.warning("lock_release_failed tenant_id=%s lock_key=%s error=%s", self.tenant.id, key, exc)

    async def _finish_renewal(self, task: asyncio.Task[None]) -> None:
        try:
            await task
        except LockLost:
            # Already recorded on the handle.
            pass

    async def _ingest(self, client: ComplaintProvider, item: ComplaintListItem, handle: LockHandle) -> str:
        async with self._session_factory() as session:
            existing = await complaints_repo.get_by_task_id(session, subject_id=self.tenant.id, task_id=item.task_id)
        if existing is not None:
            return OUTCOME_DUPLICATE

        detail = await client.get_complaint_detail(item.complaint_id)
        complaint, details = build_complaint(self.tenant, item, detail, now=self._clock())
        if handle.lost:
            raise LockLost(handle.key)
        async with self._session_factory() as session:
            await complaints_repo.create_with_details(session, complaint, details)
        logger.info(
            "complaint_persisted tenant_id=%s task_id=%s complaint_no=%s lines=%s agent_id=%s",
            self.tenant.id,
            item.task_id,
            complaint.complaint_no,
            len(details),
            complaint.agent_id,
        )
        await self._blacklist_counterparties(complaint, detail)
        return OUTCOME_PROCESSED

    async def resolve_blacklist_targets(
        self, complaint: Complaint, detail: ComplaintDetailResult
    ) -> list[BlacklistTarget]:
        merchant_nos = [line.merchant_order_no for line in detail.order_lines if line.merchant_order_no]
        platform_nos = [line.platform_order_no for line in detail.order_lines if line.platform_order_no]
        orders: list[Order] = []
        try:
            async with self._session_factory() as session:
                orders = await orders_repo.find_by_order_nos(
                    session,
                    subject_id=self.tenant.id,
                    merchant_order_nos=merchant_nos,
                    platform_order_nos=platform_nos,
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "order_lookup_failed tenant_id=%s task_id=%s error=%s",
                self.tenant.id,
                complaint.task_id,
                exc.__class__.__name__,
            )
            orders = []

        by_buyer: dict[str, list[Order]] = {}
        for order in orders:
            if order.is_paid and order.buyer_id:
                by_buyer.setdefault(order.buyer_id, []).append(order)
        if by_buyer:
            return [BlacklistTarget(counterparty_id=buyer, ip_address=_best_ip(rows)) for buyer, rows in by_buyer.items()]

        if not complaint.complainant_id:
            return []
        logger.info(
            "blacklist_fallback_complainant tenant_id=%s task_id=%s complainant_id=%s",
            self.tenant.id,
            complaint.task_id,
            complaint.complainant_id,
        )
        return [BlacklistTarget(counterparty_id=complaint.complainant_id)]

    async def _blacklist_counterparties(self, complaint: Complaint, detail: ComplaintDetailResult) -> None:
        targets = await self.resolve_blacklist_targets(complaint, detail)
        for target in targets:
            try:
                await self._blacklist.add_to_blacklist(
                    self.tenant,
                    target.counterparty_id,
                    # Device codes are not tracked on orders.
                    "",
                    target.ip_address,
                    complaint.task_id,
                )
            except Exception:  # noqa: BLE001 - blacklisting never fails ingestion.
                logger.exception(
                    "blacklist failed tenant_id=%s task_id=%s counterparty_id=%s",
                    self.tenant.id,
                    complaint.task_id,
                    target.counterparty_id,
                )

    def stats(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant.id,
            "app_id": self.tenant.app_id,
            "state": self.state.value,
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_summary": asdict(self.last_summary) if self.last_summary else None,
            "last_error": self.last_error,
        }
