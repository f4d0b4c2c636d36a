from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.apps.api.deps import AdminContext, get_db, get_runtime, require_admin
from mailshield.apps.api.openapi import REMEDIATION_ERROR_RESPONSES
from mailshield.apps.api.response import SuccessEnvelope, success_response
from mailshield.core.errors import ErrorCode
from mailshield.services.remediation.engine import RemediationResult
from mailshield.services.runtime import Runtime


router = APIRouter(prefix="/remediation", tags=["remediation"], responses=REMEDIATION_ERROR_RESPONSES)

RemediationAction = Literal["quarantine", "release", "delete", "false-positive"]


class RemediationRequest(BaseModel):
    # Allowlist the sender address or its domain on release / false positive.
    allowlist: Literal["sender", "domain"] | None = None
    reason: str | None = Field(default=None, max_length=2000)


class RemediationResponse(BaseModel):
    message_id: str
    state: str | None
    changed: bool


def _raise_for_failure(result: RemediationResult) -> None:
    code = result.error_code or ErrorCode.TERMINAL.value
    if code == ErrorCode.NOT_FOUND.value and result.state is None:
        status_code = 404
    elif code == ErrorCode.INVALID_TRANSITION.value:
        status_code = 409
    else:
        # The mailbox provider refused or failed the move.
        status_code = 502
    raise HTTPException(
        status_code=status_code,
        detail={"code": code.upper(), "message": result.reason or "remediation failed", "state": result.state},
    )


@router.post("/{message_id}/{action}", response_model=SuccessEnvelope[RemediationResponse])
async def remediate_message(
    message_id: str,
    action: RemediationAction,
    request: Request,
    payload: RemediationRequest | None = Body(default=None),
    admin: AdminContext = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    payload = payload or RemediationRequest()
    engine = runtime.remediation
    kwargs = {"tenant_id": admin.tenant_id, "message_id": message_id, "actor_id": admin.actor_id}
    if action == "quarantine":
        result = await engine.quarantine(session, **kwargs)
    elif action == "release":
        result = await engine.release(session, allowlist=payload.allowlist, **kwargs)
    elif action == "false-positive":
        result = await engine.mark_false_positive(
            session, reason=payload.reason, allowlist=payload.allowlist, **kwargs
        )
    else:
        result = await engine.delete(session, **kwargs)
    if not result.success:
        _raise_for_failure(result)
    data = RemediationResponse(message_id=message_id, state=result.state, changed=result.changed)
    return success_response(request=request, data=data.model_dump())
