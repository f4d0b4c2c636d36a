from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from mailshield.apps.api.deps import get_runtime, require_cron_secret
from mailshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from mailshield.services.runtime import Runtime


router = APIRouter(prefix="/workers", tags=["workers"], responses=DEFAULT_ERROR_RESPONSES)


# Scheduler-facing trigger; returns the bare camelCase summary rather than the envelope.
@router.api_route("/queue", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def drain_queue(
    limit: int | None = Query(default=None, ge=1, description="Batch size; capped at the admin maximum"),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    summary = await runtime.worker.run(limit=limit)
    return summary.to_payload()


@router.api_route("/sync", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def poll_mailboxes(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    summary = await runtime.maintenance.poll_stale()
    return summary.to_payload()


@router.api_route("/subscriptions", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def renew_subscriptions(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    summary = await runtime.maintenance.renew_expiring()
    return summary.to_payload()
