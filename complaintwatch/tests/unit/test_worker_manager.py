from __future__ import annotations

import asyncio

import pytest

from complaintwatch.core.errors import WorkerFault
from complaintwatch.services.directory import TenantRef
from complaintwatch.services.telemetry import Telemetry
from complaintwatch.tests.utils.fakes import InMemoryDirectory
from complaintwatch.workers.manager import WorkerManager, plan_reconciliation
from complaintwatch.workers.tenant_worker import WorkerState


def _tenant(tenant_id: int) -> TenantRef:
    return TenantRef(id=tenant_id, app_id=f"20210000000000{tenant_id:02d}", name=f"Tenant {tenant_id}")


class _ScriptedWorker:
    """Stands in for TenantWorker; either faults at once or runs until stopped."""

    def __init__(self, tenant: TenantRef, stop: asyncio.Event, *, fault: bool, ignore_stop: bool) -> None:
        self.tenant = tenant
        self._stop = stop
        self._fault = fault
        self._ignore_stop = ignore_stop
        self.state = WorkerState.IDLE

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> WorkerFault | None:
        if self._fault:
            self.state = WorkerState.CRASHED
            return WorkerFault(tenant_id=self.tenant.id, error=RuntimeError("provider client exploded"))
        if self._ignore_stop:
            await asyncio.sleep(3600)
        await self._stop.wait()
        self.state = WorkerState.STOPPED
        return None

    def stats(self) -> dict:
        return {"tenant_id": self.tenant.id, "state": self.state.value}


class _Factory:
    def __init__(self, *, faults: int = 0, ignore_stop: bool = False) -> None:
        self.faults = faults
        self.ignore_stop = ignore_stop
        self.calls: list[int] = []

    def __call__(self, tenant: TenantRef, stop: asyncio.Event) -> _ScriptedWorker:
        self.calls.append(tenant.id)
        fault = self.calls.count(tenant.id) <= self.faults
        return _ScriptedWorker(tenant, stop, fault=fault, ignore_stop=self.ignore_stop)


def _manager(directory: InMemoryDirectory, factory: _Factory, **kwargs) -> WorkerManager:
    kwargs.setdefault("refresh_interval_s", 0.01)
    kwargs.setdefault("telemetry", Telemetry())
    return WorkerManager(directory=directory, factory=factory, **kwargs)


async def _until(predicate, timeout_s: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout_s)


def test_plan_reconciliation_diffs_sets() -> None:
    plan = plan_reconciliation([1, 2, 3], [2, 4])
    assert plan.to_start == (1, 3)
    assert plan.to_stop == (4,)
    assert plan.unchanged == (2,)
    assert not plan.is_noop
    assert plan_reconciliation([5], [5]).is_noop


@pytest.mark.asyncio
async def test_reconcile_converges_and_keeps_unchanged_workers() -> None:
    directory = InMemoryDirectory([_tenant(2), _tenant(4)])
    manager = _manager(directory, _Factory())

    await manager.reconcile()
    assert manager.live_tenant_ids() == {2, 4}
    kept = manager.handle_for(2)
    retired = manager.handle_for(4)

    directory.tenants = {t.id: t for t in (_tenant(1), _tenant(2), _tenant(3))}
    plan = await manager.reconcile()

    assert plan.to_start == (1, 3)
    assert plan.to_stop == (4,)
    assert manager.live_tenant_ids() == {1, 2, 3}
    assert manager.handle_for(2) is kept
    assert retired.stop_event.is_set()
    assert not kept.stop_event.is_set()
    await asyncio.wait_for(retired.task, timeout=1)

    await manager.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_stop_clears_live_set_and_signals_everyone() -> None:
    manager = _manager(InMemoryDirectory([_tenant(1), _tenant(2)]), _Factory())
    await manager.reconcile()

    handles = manager.stop()

    assert manager.worker_count() == 0
    assert len(handles) == 2
    assert all(handle.stop_event.is_set() for handle in handles)
    await asyncio.wait_for(asyncio.gather(*(handle.task for handle in handles)), timeout=1)


@pytest.mark.asyncio
async def test_faulted_worker_is_restarted_after_backoff() -> None:
    factory = _Factory(faults=1)
    manager = _manager(InMemoryDirectory([_tenant(1)]), factory, restartable=True, restart_backoff_s=0.01)
    await manager.reconcile()
    handle = manager.handle_for(1)

    await _until(lambda: len(factory.calls) == 2)

    assert handle.restarts == 1
    assert handle.last_fault == "RuntimeError: provider client exploded"
    assert not handle.finished
    assert manager.stats()[0]["restarts"] == 1

    await manager.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_non_restartable_fault_is_relaunched_by_next_pass() -> None:
    factory = _Factory(faults=1)
    manager = _manager(InMemoryDirectory([_tenant(1)]), factory, restartable=False)
    await manager.reconcile()
    first = manager.handle_for(1)

    await _until(lambda: first.finished)
    assert first.worker.state == WorkerState.STOPPED
    assert factory.calls == [1]

    plan = await manager.reconcile()

    assert plan.to_start == (1,)
    second = manager.handle_for(1)
    assert second is not first
    await _until(lambda: len(factory.calls) == 2)
    assert not second.finished

    await manager.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_shutdown_cancels_workers_past_grace() -> None:
    manager = _manager(InMemoryDirectory([_tenant(1)]), _Factory(ignore_stop=True))
    await manager.reconcile()
    handle = manager.handle_for(1)
    await asyncio.sleep(0)

    await manager.shutdown(grace_s=0.05)

    assert handle.task.done()
    assert handle.task.cancelled()


@pytest.mark.asyncio
async def test_run_loop_reconciles_until_stopped() -> None:
    directory = InMemoryDirectory([_tenant(1)])
    manager = _manager(directory, _Factory())
    runner = asyncio.create_task(manager.run())

    await _until(lambda: manager.live_tenant_ids() == {1})
    directory.tenants[2] = _tenant(2)
    await _until(lambda: manager.live_tenant_ids() == {1, 2})

    await manager.shutdown(grace_s=1)
    await asyncio.wait_for(runner, timeout=1)
    assert manager.worker_count() == 0


@pytest.mark.asyncio
async def test_reconcile_failure_keeps_loop_alive() -> None:
    directory = InMemoryDirectory([_tenant(1)])
    calls = 0
    original = directory.list_eligible_tenants

    async def _flaky() -> list[TenantRef]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database unavailable")
        return await original()

    directory.list_eligible_tenants = _flaky
    telemetry = Telemetry()
    manager = _manager(directory, _Factory(), telemetry=telemetry)
    runner = asyncio.create_task(manager.run())

    await _until(lambda: manager.live_tenant_ids() == {1})
    assert telemetry.counter("workers.reconcile_failed") == 1

    await manager.shutdown(grace_s=1)
    await asyncio.wait_for(runner, timeout=1)


@pytest.mark.asyncio
async def test_stop_during_directory_query_launches_nothing() -> None:
    directory = InMemoryDirectory([_tenant(1), _tenant(2)])
    entered = asyncio.Event()
    release = asyncio.Event()
    original = directory.list_eligible_tenants

    async def _gated() -> list[TenantRef]:
        entered.set()
        await release.wait()
        return await original()

    directory.list_eligible_tenants = _gated
    factory = _Factory()
    manager = _manager(directory, factory)
    runner = asyncio.create_task(manager.run())
    await asyncio.wait_for(entered.wait(), timeout=1)

    manager.stop()
    release.set()
    await asyncio.wait_for(runner, timeout=1)

    assert manager.worker_count() == 0
    assert manager.live_tenant_ids() == set()
    assert factory.calls == []
    await manager.shutdown(grace_s=0.1)


@pytest.mark.asyncio
async def test_reconcile_after_stop_is_a_noop() -> None:
    factory = _Factory()
    manager = _manager(InMemoryDirectory([_tenant(1)]), factory)
    manager.stop()

    plan = await manager.reconcile()

    assert plan.is_noop
    assert manager.worker_count() == 0
    assert factory.calls == []
