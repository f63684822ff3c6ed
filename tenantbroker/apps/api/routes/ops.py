from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from tenantbroker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantbroker.apps.api.response import SuccessEnvelope, success_response
from tenantbroker.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
    p95_latency,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class MetricsResponse(BaseModel):
    window_s: int
    availability: float | None
    p95_latency_ms: float | None
    external_calls: dict[str, dict[str, Any]]
    counters: dict[str, int]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request, window_s: int = Query(default=300, ge=1, le=86400)) -> dict:
    # In-process counters only; each worker reports its own view.
    payload = MetricsResponse(
        window_s=window_s,
        availability=availability(window_s),
        p95_latency_ms=p95_latency(window_s),
        external_calls=external_latency_by_integration(window_s),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
