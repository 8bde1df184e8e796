from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from complaintwatch.persistence.db import pool_stats


router = APIRouter(prefix="/ops", tags=["ops"])


class WorkersResponse(BaseModel):
    count: int
    workers: list[dict[str, Any]]


class InvalidateResponse(BaseModel):
    tenant_id: int
    invalidated: bool


@router.get("/workers", response_model=WorkersResponse)
async def list_workers(request: Request) -> WorkersResponse:
    manager = request.app.state.manager
    return WorkersResponse(count=manager.worker_count(), workers=manager.stats())


@router.get("/metrics")
async def metrics(request: Request) -> dict[str, Any]:
    state = request.app.state
    return {
        **state.telemetry.snapshot(),
        "workers": state.manager.worker_count(),
        "credential_cache": state.cache.stats(),
        "database_pool": pool_stats(),
    }


@router.post("/credentials/{tenant_id}/invalidate", response_model=InvalidateResponse)
async def invalidate_credential(tenant_id: int, request: Request) -> InvalidateResponse:
    # Called after an operator rotates a tenant's key material.
    invalidated = request.app.state.cache.invalidate(tenant_id)
    return InvalidateResponse(tenant_id=tenant_id, invalidated=invalidated)
