from __future__ import annotations

import asyncio

import httpx
import pytest

from complaintwatch.core.config import Settings
from complaintwatch.services.directory import TenantRef
from complaintwatch.tests.utils.fakes import FakeRedis, InMemoryDirectory
from complaintwatch.workers.runtime import build_runtime
from complaintwatch.workers.tenant_worker import TenantWorker


@pytest.mark.asyncio
async def test_build_runtime_wires_manager_to_real_workers() -> None:
    settings = Settings(
        fetch_interval_s=3600,
        refresh_interval_s=3600,
        page_size=500,
        cert_encryption_key="0123456789abcdef0123456789abcdef",
    )
    directory = InMemoryDirectory([TenantRef(id=5, app_id="2021000000000005", name="Five")])
    runtime = build_runtime(settings, redis=FakeRedis(), http=httpx.AsyncClient(), directory=directory)

    await runtime.manager.reconcile()
    handle = runtime.manager.handle_for(5)
    for _ in range(100):
        if handle.worker is not None and handle.worker.last_error:
            break
        await asyncio.sleep(0.01)

    assert isinstance(handle.worker, TenantWorker)
    # No credential row yet: the tick fails but the worker keeps running.
    assert handle.worker.last_error.startswith("IncompleteCredential")
    assert not handle.finished
    assert runtime.telemetry.counter("worker.tick_failed") == 1
    assert runtime.cache.stats()["ttl_s"] == settings.cert_cache_ttl_s

    await runtime.manager.shutdown(grace_s=1)
    await runtime.aclose()
