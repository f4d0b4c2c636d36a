from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from mailshield.apps.api.deps import get_runtime, require_admin_token
from mailshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from mailshield.apps.api.response import SuccessEnvelope, success_response
from mailshield.services.runtime import Runtime
from mailshield.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin_token)],
)


@router.get("/queue", response_model=SuccessEnvelope[dict[str, Any]])
async def queue_status(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    depth = await runtime.queue.depth()
    dead_letters = await runtime.queue.dead_letters(limit)
    return success_response(request=request, data={"depth": depth, "dead_letters": dead_letters})


@router.post("/dead-letters/{item_id}/replay", response_model=SuccessEnvelope[dict[str, Any]])
async def replay_dead_letter(
    item_id: str,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    item = await runtime.queue.replay_dead_letter(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Dead letter not found"})
    return success_response(request=request, data={"replayed": item.id, "tenant_id": item.tenant_id})


@router.get("/threat-intel-cache", response_model=SuccessEnvelope[dict[str, Any]])
async def threat_intel_cache_stats(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    return success_response(request=request, data=runtime.cache.stats())


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86_400),
) -> dict[str, Any]:
    data = {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external_calls": external_latency_by_integration(window_s),
    }
    return success_response(request=request, data=data)
