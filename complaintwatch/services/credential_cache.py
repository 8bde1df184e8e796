from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from complaintwatch.core.errors import IncompleteCredential
from complaintwatch.services.crypto.credentials import decrypt_credential_blob
from complaintwatch.services.directory import CredentialMaterial, TenantRef
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptedCredential:
    app_private_key: str
    app_public_cert: str
    alipay_root_cert: str
    alipay_public_cert: str

    def __repr__(self) -> str:
        return "DecryptedCredential(<redacted>)"


# Builds a provider client from decrypted material; runs in a worker thread.
ClientFactory = Callable[[TenantRef, DecryptedCredential], Any]


@dataclass(slots=True)
class CachedClient:
    tenant_id: int
    client: Any
    created_at: float
    expires_at: float
    version: int

    def is_valid(self, *, now: float, version: int) -> bool:
        return self.expires_at > now and self.version == version


class CredentialCache:
    """Per-tenant provider clients gated by TTL and credential version."""

    def __init__(
        self,
        *,
        factory: ClientFactory,
        encryption_key: bytes,
        ttl_s: float,
        telemetry: Telemetry,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._encryption_key = encryption_key
        self._ttl_s = float(ttl_s)
        self._telemetry = telemetry
        self._clock = clock
        self._entries: dict[int, CachedClient] = {}
        self._build_locks: dict[int, asyncio.Lock] = {}
        self._build_users: dict[int, int] = {}

    def _lookup(self, tenant_id: int, version: int) -> Any | None:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        if entry.is_valid(now=self._clock(), version=version):
            return entry.client
        # Expired or built from an older credential version.
        self._entries.pop(tenant_id, None)
        self._telemetry.increment_counter("credential_cache.evicted")
        logger.info(
            "credential_cache_evict tenant_id=%s cached_version=%s current_version=%s",
            tenant_id,
            entry.version,
            version,
        )
        return None

    def _decrypt(self, credential: CredentialMaterial) -> DecryptedCredential:
        return DecryptedCredential(
            app_private_key=decrypt_credential_blob(credential.app_private_key, self._encryption_key),
            app_public_cert=decrypt_credential_blob(credential.app_public_cert, self._encryption_key),
            alipay_root_cert=decrypt_credential_blob(credential.alipay_root_cert, self._encryption_key),
            alipay_public_cert=decrypt_credential_blob(credential.alipay_public_cert, self._encryption_key),
        )

    async def obtain(self, tenant: TenantRef, credential: CredentialMaterial) -> Any:
        missing = credential.missing_fields()
        if missing:
            raise IncompleteCredential(tenant.id, missing)

        client = self._lookup(tenant.id, credential.version)
        if client is not None:
            self._telemetry.increment_counter("credential_cache.hit")
            return client

        lock = self._build_locks.setdefault(tenant.id, asyncio.Lock())
        self._build_users[tenant.id] = self._build_users.get(tenant.id, 0) + 1
        try:
            async with lock:
                # Another caller may have finished the build while this one waited.
                client = self._lookup(tenant.id, credential.version)
                if client is not None:
                    self._telemetry.increment_counter("credential_cache.hit")
                    return client
                return await self._build(tenant, credential)
        finally:
            self._leave_build(tenant.id)

    async def _build(self, tenant: TenantRef, credential: CredentialMaterial) -> Any:
        self._telemetry.increment_counter("credential_cache.miss")
        decrypted = self._decrypt(credential)
        try:
            client = await asyncio.to_thread(self._factory, tenant, decrypted)
        finally:
            del decrypted
        now = self._clock()
        self._entries[tenant.id] = CachedClient(
            tenant_id=tenant.id,
            client=client,
            created_at=now,
            expires_at=now + self._ttl_s,
            version=credential.version,
        )
        self._telemetry.increment_counter("credential_cache.build")
        self._telemetry.set_gauge("credential_cache.entries", len(self._entries))
        logger.info("credential_cache_build tenant_id=%s version=%s", tenant.id, credential.version)
        return client

    def _leave_build(self, tenant_id: int) -> None:
        # Build locks exist only while some caller holds or waits on them.
        remaining = self._build_users.get(tenant_id, 1) - 1
        if remaining > 0:
            self._build_users[tenant_id] = remaining
            return
        self._build_users.pop(tenant_id, None)
        self._build_locks.pop(tenant_id, None)

    def invalidate(self, tenant_id: int) -> bool:
        removed = self._entries.pop(tenant_id, None) is not None
        if removed:
            self._telemetry.increment_counter("credential_cache.invalidated")
            self._telemetry.set_gauge("credential_cache.entries", len(self._entries))
            logger.info("credential_cache_invalidate tenant_id=%s", tenant_id)
        return removed

    def sweep(self) -> int:
        now = self._clock()
        expired = [tenant_id for tenant_id, entry in self._entries.items() if entry.expires_at <= now]
        for tenant_id in expired:
            self._entries.pop(tenant_id, None)
        if expired:
            self._telemetry.increment_counter("credential_cache.swept", len(expired))
            logger.info("credential_cache_sweep removed=%s", len(expired))
        self._telemetry.set_gauge("credential_cache.entries", len(self._entries))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "entries": len(self._entries),
            "ttl_s": self._ttl_s,
            "build_locks": len(self._build_locks),
            "tenants": {
                str(tenant_id): {
                    "version": entry.version,
                    "expires_in_s": round(entry.expires_at - now, 1),
                }
                for tenant_id, entry in self._entries.items()
            },
        }


async def run_sweep_loop(cache: CredentialCache, *, interval_s: float, stop: asyncio.Event) -> None:
    # Periodic sweep; obtain() evicts lazily in between.
    while not stop.is_set():
        try:
            cache.sweep()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("credential cache sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(1.0, interval_s))
        except asyncio.TimeoutError:
            continue
