from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from complaintwatch.core.errors import CoordinationStoreError, LockLost
from complaintwatch.services.coordination_lock import CoordinationLock, LockHandle
from complaintwatch.services.telemetry import Telemetry
from complaintwatch.tests.utils.fakes import FakeRedis


def _lock(redis: FakeRedis, **overrides) -> CoordinationLock:
    options = {"base_ttl_ms": 60000, "max_ttl_ms": 300000, "telemetry": Telemetry()}
    options.update(overrides)
    return CoordinationLock(redis, **options)


def test_ttl_scales_with_weight_and_caps_at_max() -> None:
    lock = _lock(FakeRedis())
    assert lock.ttl_for(0) == 60000
    assert lock.ttl_for(100) == 110000
    assert lock.ttl_for(1000) == 300000
    assert lock.ttl_for(-5) == 60000


@pytest.mark.asyncio
async def test_acquire_uses_weighted_ttl() -> None:
    redis = FakeRedis()
    lock = _lock(redis)
    handle = await lock.acquire("complaint:lock:T1", weight=100)
    assert handle is not None
    assert handle.ttl_ms == 110000
    assert redis.ttl_ms("complaint:lock:T1") == 110000


@pytest.mark.asyncio
async def test_only_one_concurrent_acquirer_wins() -> None:
    redis = FakeRedis()
    lock = _lock(redis)
    results = await asyncio.gather(*(lock.acquire("complaint:lock:T1", weight=30) for _ in range(10)))
    winners = [handle for handle in results if handle is not None]
    assert len(winners) == 1
    assert await redis.get("complaint:lock:T1") == winners[0].token

    assert await lock.release(winners[0]) is True
    again = await lock.acquire("complaint:lock:T1", weight=30)
    assert again is not None
    assert again.token != winners[0].token


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_over() -> None:
    redis = FakeRedis()
    lock = _lock(redis, base_ttl_ms=1000, max_ttl_ms=1000)
    first = await lock.acquire("complaint:lock:T1")
    assert first is not None
    assert await lock.acquire("complaint:lock:T1") is None
    redis.advance(2)
    second = await lock.acquire("complaint:lock:T1")
    assert second is not None
    # The stale holder's release must not touch the new owner.
    assert await lock.release(first) is False
    assert await redis.get("complaint:lock:T1") == second.token


@pytest.mark.asyncio
async def test_foreign_token_cannot_release_or_renew() -> None:
    redis = FakeRedis()
    telemetry = Telemetry()
    lock = _lock(redis, telemetry=telemetry)
    owner = await lock.acquire("complaint:lock:T1", weight=0)
    assert owner is not None
    intruder = LockHandle(key="complaint:lock:T1", token="not-the-owner", ttl_ms=300000)

    assert await lock.release(intruder) is False
    assert await redis.get("complaint:lock:T1") == owner.token

    with pytest.raises(LockLost):
        await lock.renew(intruder, 300000)
    assert intruder.lost is True
    assert redis.ttl_ms("complaint:lock:T1") == 60000
    assert telemetry.counter("lock.lost") == 1


@pytest.mark.asyncio
async def test_renew_extends_owned_lock() -> None:
    redis = FakeRedis()
    lock = _lock(redis)
    handle = await lock.acquire("complaint:lock:T1")
    assert handle is not None
    redis.advance(30)
    await lock.renew(handle, 90000)
    assert redis.ttl_ms("complaint:lock:T1") == 90000
    assert handle.ttl_ms == 90000


@pytest.mark.asyncio
async def test_auto_renew_stops_on_signal() -> None:
    redis = FakeRedis()
    lock = _lock(redis, base_ttl_ms=40, max_ttl_ms=40)
    handle = await lock.acquire("complaint:lock:T1")
    assert handle is not None
    stop = asyncio.Event()
    task = asyncio.create_task(lock.auto_renew(handle, stop))
    await asyncio.sleep(0.07)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert handle.lost is False
    assert await redis.get("complaint:lock:T1") == handle.token


@pytest.mark.asyncio
async def test_auto_renew_fails_fast_when_lock_is_stolen() -> None:
    redis = FakeRedis()
    lock = _lock(redis, base_ttl_ms=40, max_ttl_ms=40)
    handle = await lock.acquire("complaint:lock:T1")
    assert handle is not None
    await redis.set("complaint:lock:T1", "someone-else")

    with pytest.raises(LockLost):
        await asyncio.wait_for(lock.auto_renew(handle, asyncio.Event()), timeout=1)
    assert handle.lost is True
    assert await redis.get("complaint:lock:T1") == "someone-else"


@pytest.mark.asyncio
async def test_store_errors_surface_as_coordination_errors() -> None:
    class _BrokenRedis(FakeRedis):
        async def set(self, *args, **kwargs):  # noqa: ANN002, ANN003
            raise RedisConnectionError("connection refused")

    lock = _lock(_BrokenRedis())
    with pytest.raises(CoordinationStoreError):
        await lock.acquire("complaint:lock:T1")
