from __future__ import annotations

from typing import Any, Awaitable, Callable

from fastapi import FastAPI

from complaintwatch.apps.ops.routes.health import router as health_router
from complaintwatch.apps.ops.routes.workers import router as workers_router
from complaintwatch.persistence.db import ping_database
from complaintwatch.services.credential_cache import CredentialCache
from complaintwatch.services.telemetry import Telemetry
from complaintwatch.workers.manager import WorkerManager


def create_app(
    *,
    manager: WorkerManager,
    cache: CredentialCache,
    telemetry: Telemetry,
    redis: Any | None,
    db_probe: Callable[[], Awaitable[None]] = ping_database,
) -> FastAPI:
    # Internal surface only: probes, worker stats and cache control.
    app = FastAPI(title="complaintwatch ops", docs_url=None, redoc_url=None)
    app.state.manager = manager
    app.state.cache = cache
    app.state.telemetry = telemetry
    app.state.redis = redis
    app.state.db_probe = db_probe
    app.include_router(health_router)
    app.include_router(workers_router)
    return app
