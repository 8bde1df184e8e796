from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

PROBE_TIMEOUT_S = 3.0


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, str]
    workers: int


class ProbeResponse(BaseModel):
    status: str


async def _probe(name: str, check) -> str:  # noqa: ANN001
    try:
        await asyncio.wait_for(check(), timeout=PROBE_TIMEOUT_S)
    except Exception as exc:  # noqa: BLE001 - a failed probe is reported, not raised.
        logger.warning("health_probe_failed component=%s error=%s", name, exc.__class__.__name__)
        return "down"
    return "up"


async def _run_checks(request: Request) -> dict[str, str]:
    state = request.app.state
    checks = {"database": await _probe("database", state.db_probe)}
    redis = state.redis
    if redis is not None:
        checks["redis"] = await _probe("redis", redis.ping)
    else:
        checks["redis"] = "down"
    return checks


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    checks = await _run_checks(request)
    up = sum(1 for value in checks.values() if value == "up")
    if up == len(checks):
        status = "healthy"
    elif up == 0:
        status = "unhealthy"
    else:
        status = "degraded"
    return HealthResponse(status=status, checks=checks, workers=request.app.state.manager.worker_count())


@router.get("/liveness", response_model=ProbeResponse)
async def liveness() -> ProbeResponse:
    return ProbeResponse(status="alive")


@router.get("/readiness", response_model=ProbeResponse)
async def readiness(request: Request):  # noqa: ANN201
    checks = await _run_checks(request)
    if all(value == "up" for value in checks.values()):
        return ProbeResponse(status="ready")
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
