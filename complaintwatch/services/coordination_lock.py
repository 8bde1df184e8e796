from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from redis.exceptions import RedisError

from complaintwatch.core.errors import CoordinationStoreError, LockLost
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

# Compare-then-act scripts; both return 0 when the caller no longer owns the key.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


@dataclass(slots=True)
class LockHandle:
    key: str
    token: str
    ttl_ms: int
    acquired_at: float = field(default_factory=time.monotonic)
    # Set by auto_renew once a renewal found the key gone or re-owned.
    lost: bool = False


class CoordinationLock:
    """Redis-backed mutual exclusion for complaint keys."""

    def __init__(
        self,
        redis: Any,
        *,
        base_ttl_ms: int,
        max_ttl_ms: int,
        weight_step_ms: int = 500,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._redis = redis
        self.base_ttl_ms = int(base_ttl_ms)
        self.max_ttl_ms = int(max_ttl_ms)
        self.weight_step_ms = int(weight_step_ms)
        self._telemetry = telemetry

    def _count(self, name: str) -> None:
        if self._telemetry is not None:
            self._telemetry.increment_counter(name)

    def ttl_for(self, weight: int) -> int:
        ttl_ms = self.base_ttl_ms + max(0, int(weight)) * self.weight_step_ms
        return min(ttl_ms, self.max_ttl_ms)

    async def acquire(self, key: str, weight: int = 0) -> LockHandle | None:
        """Try to take ``key`` once.

        Contention returns ``None`` instead of raising ``LockNotAcquired``; store
        failures raise ``CoordinationStoreError``.
        """
        ttl_ms = self.ttl_for(weight)
        token = uuid4().hex
        try:
            acquired = await self._redis.set(key, token, nx=True, px=ttl_ms)
        except RedisError as exc:
            self._count("lock.error")
            raise CoordinationStoreError(f"acquire {key} failed") from exc
        if not acquired:
            self._count("lock.contended")
            logger.debug("lock_contended key=%s", key)
            return None
        self._count("lock.acquired")
        logger.debug("lock_acquired key=%s ttl_ms=%s", key, ttl_ms)
        return LockHandle(key=key, token=token, ttl_ms=ttl_ms)

    async def release(self, handle: LockHandle) -> bool:
        # A lock that already expired or changed hands counts as released.
        try:
            deleted = await self._redis.eval(RELEASE_SCRIPT, 1, handle.key, handle.token)
        except RedisError as exc:
            self._count("lock.error")
            raise CoordinationStoreError(f"release {handle.key} failed") from exc
        if int(deleted or 0) == 0:
            self._count("lock.release_stale")
            logger.warning("lock_release_not_owner key=%s", handle.key)
            return False
        self._count("lock.released")
        return True

    async def renew(self, handle: LockHandle, ttl_ms: int | None = None) -> None:
        new_ttl = int(ttl_ms if ttl_ms is not None else handle.ttl_ms)
        try:
            extended = await self._redis.eval(RENEW_SCRIPT, 1, handle.key, handle.token, new_ttl)
        except RedisError as exc:
            self._count("lock.error")
            raise CoordinationStoreError(f"renew {handle.key} failed") from exc
        if int(extended or 0) == 0:
            handle.lost = True
            self._count("lock.lost")
            raise LockLost(handle.key)
        handle.ttl_ms = new_ttl
        self._count("lock.renewed")

    async def auto_renew(self, handle: LockHandle, stop: asyncio.Event) -> None:
        """Renew every half TTL until ``stop`` is set or the task is cancelled.

        The first failed renewal marks the handle lost and raises ``LockLost``;
        there is no retry, the holder must abandon its work.
        """
        while True:
            interval_s = max(0.01, handle.ttl_ms / 2000.0)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.renew(handle)
            except CoordinationStoreError as exc:
                handle.lost = True
                logger.warning("lock_renew_failed key=%s error=%s", handle.key, exc)
                raise LockLost(handle.key) from exc
            except LockLost:
                logger.warning("lock_lost key=%s", handle.key)
                raise
