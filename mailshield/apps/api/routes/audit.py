from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.apps.api.deps import AdminContext, get_db, require_admin
from mailshield.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from mailshield.apps.api.response import SuccessEnvelope, success_response
from mailshield.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None

    @field_serializer("occurred_at")
    def _iso(self, value: datetime) -> str:
        return value.isoformat()


@router.get("/events", response_model=SuccessEnvelope[list[AuditEventView]])
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    resource_id: str | None = None,
    since: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Always scoped to the caller's tenant header. A trailing dot in event_type selects a family.
    events = await audit_repo.list_events(
        db,
        tenant_id=admin.tenant_id,
        event_type=event_type,
        resource_id=resource_id,
        since=since,
        limit=limit,
    )
    return success_response(request=request, data=[AuditEventView.model_validate(event).model_dump() for event in events])
