from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from fabricsec.apps.api.deps import get_gateway
from fabricsec.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fabricsec.apps.api.response import SuccessEnvelope, success_response
from fabricsec.services.query.gateway import QueryExecutionGateway
from fabricsec.services.telemetry import counters_snapshot


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    readonly_pool: dict[str, Any]
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    gateway: QueryExecutionGateway = Depends(get_gateway),
) -> dict:
    # Degraded rather than failing: the write path may be fine when sources are not.
    connectivity = await gateway.check_connectivity()
    payload = HealthResponse(
        status="ok" if connectivity["healthy"] else "degraded",
        readonly_pool=connectivity,
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
