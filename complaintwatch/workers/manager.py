from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from complaintwatch.services.directory import TenantDirectory, TenantRef
from complaintwatch.services.telemetry import Telemetry
from complaintwatch.workers.tenant_worker import TenantWorker, WorkerState


logger = logging.getLogger(__name__)

# Builds a fresh worker bound to the handle's stop event; no state carries over between launches.
WorkerFactory = Callable[[TenantRef, asyncio.Event], TenantWorker]


@dataclass(frozen=True)
class ReconciliationPlan:
    to_start: tuple[int, ...]
    to_stop: tuple[int, ...]
    unchanged: tuple[int, ...]

    @property
    def is_noop(self) -> bool:
        return not self.to_start and not self.to_stop


_NOOP_PLAN = ReconciliationPlan(to_start=(), to_stop=(), unchanged=())


def plan_reconciliation(desired: Iterable[int], actual: Iterable[int]) -> ReconciliationPlan:
    desired_set = set(desired)
    actual_set = set(actual)
    return ReconciliationPlan(
        to_start=tuple(sorted(desired_set - actual_set)),
        to_stop=tuple(sorted(actual_set - desired_set)),
        unchanged=tuple(sorted(desired_set & actual_set)),
    )


@dataclass
class WorkerHandle:
    tenant: TenantRef
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    worker: TenantWorker | None = None
    restarts: int = 0
    last_fault: str | None = None

    def signal_stop(self) -> None:
        self.stop_event.set()
        if self.worker is not None:
            self.worker.stop()

    @property
    def finished(self) -> bool:
        return self.task is not None and self.task.done()

    def stats(self) -> dict[str, Any]:
        worker_stats = self.worker.stats() if self.worker is not None else {"tenant_id": self.tenant.id}
        return {
            **worker_stats,
            "restarts": self.restarts,
            "last_fault": self.last_fault,
            "running": self.task is not None and not self.task.done(),
        }


class LiveWorkerSet:
    """Running workers keyed by tenant id; every access goes through one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[int, WorkerHandle] = {}

    def snapshot(self) -> dict[int, WorkerHandle]:
        with self._lock:
            return dict(self._handles)

    def insert(self, tenant_id: int, handle: WorkerHandle) -> None:
        with self._lock:
            self._handles[tenant_id] = handle

    def remove(self, tenant_id: int) -> WorkerHandle | None:
        with self._lock:
            return self._handles.pop(tenant_id, None)

    def clear(self) -> list[WorkerHandle]:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            return handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


async def supervise_worker(
    handle: WorkerHandle,
    factory: WorkerFactory,
    *,
    restartable: bool,
    backoff_s: float,
    telemetry: Telemetry,
) -> None:
    """Run a tenant worker and relaunch it after faults when restartable."""
    while not handle.stop_event.is_set():
        worker = factory(handle.tenant, handle.stop_event)
        handle.worker = worker
        fault = await worker.run()
        if fault is None:
            return
        handle.last_fault = fault.describe()
        telemetry.increment_counter("worker.faults")
        if not restartable:
            worker.state = WorkerState.STOPPED
            logger.error("tenant_worker_fault_stopped tenant_id=%s fault=%s", handle.tenant.id, handle.last_fault)
            return
        worker.state = WorkerState.RESTARTING
        handle.restarts += 1
        telemetry.increment_counter("worker.restarts")
        logger.warning(
            "tenant_worker_restarting tenant_id=%s backoff_s=%s restarts=%s fault=%s",
            handle.tenant.id,
            backoff_s,
            handle.restarts,
            handle.last_fault,
        )
        try:
            await asyncio.wait_for(handle.stop_event.wait(), timeout=backoff_s)
            return
        except asyncio.TimeoutError:
            continue


class WorkerManager:
    """Keeps exactly one supervised worker per eligible tenant."""

    def __init__(
        self,
        *,
        directory: TenantDirectory,
        factory: WorkerFactory,
        telemetry: Telemetry,
        refresh_interval_s: float,
        restartable: bool = True,
        restart_backoff_s: float = 5.0,
    ) -> None:
        self._directory = directory
        self._factory = factory
        self._telemetry = telemetry
        self._refresh_interval_s = float(refresh_interval_s)
        self._restartable = restartable
        self._restart_backoff_s = float(restart_backoff_s)
        self._live = LiveWorkerSet()
        # Tasks of workers told to stop but possibly still finishing a tick.
        self._retiring: set[asyncio.Task[None]] = set()
        self._stop = asyncio.Event()

    def _launch(self, tenant: TenantRef) -> WorkerHandle:
        if self._stop.is_set():
            raise RuntimeError(f"worker manager stopped; not launching tenant {tenant.id}")
        handle = WorkerHandle(tenant=tenant)
        handle.task = asyncio.create_task(
            supervise_worker(
                handle,
                self._factory,
                restartable=self._restartable,
                backoff_s=self._restart_backoff_s,
                telemetry=self._telemetry,
            ),
            name=f"tenant-worker-{tenant.id}",
        )
        return handle

    def _retire(self, handle: WorkerHandle) -> None:
        handle.signal_stop()
        if handle.task is not None and not handle.task.done():
            self._retiring.add(handle.task)
            handle.task.add_done_callback(self._retiring.discard)

    def _prune_finished(self) -> None:
        # A worker that stopped after a fault is dropped so the pass can start a fresh one.
        for tenant_id, handle in self._live.snapshot().items():
            if handle.finished:
                self._live.remove(tenant_id)
                logger.info("tenant_worker_pruned tenant_id=%s last_fault=%s", tenant_id, handle.last_fault)

    async def reconcile(self) -> ReconciliationPlan:
        if self._stop.is_set():
            return _NOOP_PLAN
        tenants = await self._directory.list_eligible_tenants()
        if self._stop.is_set():
            # stop() ran while the directory was queried; the cleared live set must stay empty.
            logger.info("reconcile_aborted_after_stop tenants=%s", len(tenants))
            return _NOOP_PLAN
        desired = {tenant.id: tenant for tenant in tenants}
        self._prune_finished()
        plan = plan_reconciliation(desired.keys(), self._live.snapshot().keys())
        for tenant_id in plan.to_stop:
            handle = self._live.remove(tenant_id)
            if handle is not None:
                self._retire(handle)
                logger.info("tenant_worker_retired tenant_id=%s", tenant_id)
        for tenant_id in plan.to_start:
            self._live.insert(tenant_id, self._launch(desired[tenant_id]))
            logger.info("tenant_worker_launched tenant_id=%s app_id=%s", tenant_id, desired[tenant_id].app_id)
        self._telemetry.set_gauge("workers.live", len(self._live))
        if not plan.is_noop:
            self._telemetry.increment_counter("workers.started", len(plan.to_start))
            self._telemetry.increment_counter("workers.stopped", len(plan.to_stop))
        return plan

    async def run(self) -> None:
        # First pass runs immediately, then on the refresh interval until stop().
        while not self._stop.is_set():
            try:
                await self.reconcile()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                self._telemetry.increment_counter("workers.reconcile_failed")
                logger.exception("worker reconciliation failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._refresh_interval_s)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> list[WorkerHandle]:
        """Signal every worker to stop and clear the live set without waiting."""
        self._stop.set()
        handles = self._live.clear()
        for handle in handles:
            self._retire(handle)
        self._telemetry.set_gauge("workers.live", 0)
        logger.info("worker_manager_stopped workers=%s", len(handles))
        return handles

    async def shutdown(self, grace_s: float) -> None:
        self.stop()
        pending = {task for task in self._retiring if not task.done()}
        if not pending:
            return
        _done, still_running = await asyncio.wait(pending, timeout=max(0.0, grace_s))
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("worker_manager_shutdown_cancelled workers=%s", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    def worker_count(self) -> int:
        return len(self._live)

    def stats(self) -> list[dict[str, Any]]:
        return [handle.stats() for _tenant_id, handle in sorted(self._live.snapshot().items())]

    def live_tenant_ids(self) -> set[int]:
        return set(self._live.snapshot().keys())

    def handle_for(self, tenant_id: int) -> WorkerHandle | None:
        return self._live.snapshot().get(tenant_id)
