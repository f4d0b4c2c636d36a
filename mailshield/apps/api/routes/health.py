from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mailshield.apps.api.deps import get_runtime
from mailshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from mailshield.apps.api.response import SuccessEnvelope, success_response
from mailshield.services.runtime import Runtime


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    # ok | degraded
    status: str
    database: bool
    queue: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    database_ok = queue_ok = True
    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        database_ok = False
    try:
        await runtime.queue.depth()
    except RedisError as exc:
        logger.warning("health_queue_unavailable", exc_info=exc)
        queue_ok = False
    payload = HealthResponse(
        status="ok" if database_ok and queue_ok else "degraded",
        database=database_ok,
        queue=queue_ok,
    )
    return success_response(request=request, data=payload.model_dump())
