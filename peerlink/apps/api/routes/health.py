from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from peerlink.apps.api.deps import get_database
from peerlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from peerlink.apps.api.response import SuccessEnvelope, success_response
from peerlink.persistence.db import Database
from peerlink.services.telemetry import counters_snapshot, external_call_stats, request_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    store_ready: bool


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    requests: dict[str, Any]
    verify_endpoint: dict[str, float | int | None]
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: Database = Depends(get_database)) -> dict:
    # Liveness only; the store is initialized lazily by the first identity call.
    payload = HealthResponse(status="ok", store_ready=db.gate.ready)
    return success_response(request=request, data=payload)


@router.get(
    "/ops/metrics",
    response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse,
)
async def metrics(
    request: Request,
    window_s: int = 300,
    db: Database = Depends(get_database),
) -> dict:
    payload = MetricsResponse(
        counters=counters_snapshot(),
        requests=request_stats(window_s=window_s),
        verify_endpoint=external_call_stats("auth.verify_endpoint", window_s=window_s),
        db_pool=db.pool_stats(),
    )
    return success_response(request=request, data=payload)
