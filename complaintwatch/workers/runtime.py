from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any

import httpx
import uvicorn
from redis.asyncio import Redis

from complaintwatch.apps.ops.main import create_app
from complaintwatch.core.config import Settings, get_settings
from complaintwatch.persistence.db import engine
from complaintwatch.providers.complaints.alipay import AlipayComplaintClient
from complaintwatch.services.blacklist import BlacklistService
from complaintwatch.services.coordination_lock import CoordinationLock
from complaintwatch.services.credential_cache import CredentialCache, DecryptedCredential, run_sweep_loop
from complaintwatch.services.crypto.utils import decode_key_material
from complaintwatch.services.directory import SqlTenantDirectory, TenantDirectory, TenantRef
from complaintwatch.services.notifications import NotificationSink
from complaintwatch.services.telemetry import Telemetry
from complaintwatch.workers.manager import WorkerManager
from complaintwatch.workers.tenant_worker import TenantWorker, WorkerConfig


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    telemetry: Telemetry
    redis: Any
    http: httpx.AsyncClient
    cache: CredentialCache
    manager: WorkerManager

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.redis.aclose()
        await engine.dispose()


def build_runtime(
    settings: Settings | None = None,
    *,
    redis: Any | None = None,
    http: httpx.AsyncClient | None = None,
    directory: TenantDirectory | None = None,
) -> Runtime:
    """Wire every collaborator once; components never reach for globals."""
    settings = settings or get_settings()
    telemetry = Telemetry()
    redis = redis if redis is not None else Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    http = http if http is not None else httpx.AsyncClient(timeout=settings.provider_call_timeout_s)
    directory = directory or SqlTenantDirectory()

    def build_client(tenant: TenantRef, material: DecryptedCredential) -> AlipayComplaintClient:
        return AlipayComplaintClient.from_material(
            app_id=tenant.app_id,
            private_key=material.app_private_key,
            app_public_cert=material.app_public_cert,
            alipay_root_cert=material.alipay_root_cert,
            http=http,
            gateway_url=settings.provider_gateway_url,
            timeout_s=settings.provider_call_timeout_s,
            telemetry=telemetry,
        )

    cache = CredentialCache(
        factory=build_client,
        encryption_key=decode_key_material(settings.cert_encryption_key),
        ttl_s=settings.cert_cache_ttl_s,
        telemetry=telemetry,
    )
    lock = CoordinationLock(
        redis,
        base_ttl_ms=settings.lock_base_ttl_ms,
        max_ttl_ms=settings.lock_max_ttl_ms,
        weight_step_ms=settings.lock_weight_step_ms,
        telemetry=telemetry,
    )
    blacklist = BlacklistService(sink=NotificationSink(telemetry=telemetry), telemetry=telemetry)
    config = WorkerConfig.from_settings(settings)

    def build_worker(tenant: TenantRef, stop: asyncio.Event) -> TenantWorker:
        return TenantWorker(
            tenant,
            directory=directory,
            cache=cache,
            lock=lock,
            blacklist=blacklist,
            telemetry=telemetry,
            config=config,
            stop=stop,
        )

    manager = WorkerManager(
        directory=directory,
        factory=build_worker,
        telemetry=telemetry,
        refresh_interval_s=settings.refresh_interval_s,
        restartable=config.restartable,
        restart_backoff_s=config.restart_backoff_s,
    )
    return Runtime(settings=settings, telemetry=telemetry, redis=redis, http=http, cache=cache, manager=manager)


async def serve(runtime: Runtime) -> None:
    settings = runtime.settings
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    tasks = [
        asyncio.create_task(runtime.manager.run(), name="worker-manager"),
        asyncio.create_task(
            run_sweep_loop(runtime.cache, interval_s=settings.cert_sweep_interval_s, stop=stop),
            name="credential-sweeper",
        ),
    ]
    server: uvicorn.Server | None = None
    if settings.ops_enabled:
        app = create_app(
            manager=runtime.manager,
            cache=runtime.cache,
            telemetry=runtime.telemetry,
            redis=runtime.redis,
        )
        server = uvicorn.Server(uvicorn.Config(app, host=settings.ops_host, port=settings.ops_port, log_config=None))
        tasks.append(asyncio.create_task(server.serve(), name="ops-server"))
    logger.info("complaintwatch_started ops_enabled=%s", settings.ops_enabled)

    await stop.wait()
    logger.info("complaintwatch_stopping grace_s=%s", settings.shutdown_grace_s)
    if server is not None:
        server.should_exit = True
    await runtime.manager.shutdown(settings.shutdown_grace_s)
    await asyncio.gather(*tasks, return_exceptions=True)
    await runtime.aclose()
    logger.info("complaintwatch_stopped")
