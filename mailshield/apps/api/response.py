from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class WebhookAck(BaseModel):
    """Provider-facing acknowledgement; never wrapped in the envelope."""

    status: Literal["queued", "ignored"]
    queued: int

    @classmethod
    def for_count(cls, queued: int) -> "WebhookAck":
        return cls(status="queued" if queued else "ignored", queued=queued)


def request_id_for(request: Request) -> str:
    # The middleware normally sets this; handlers that fire before it still need one.
    existing = getattr(request.state, "request_id", None)
    if not existing:
        existing = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = existing
    return existing


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details).model_dump(exclude_none=True)
    return {"error": error, "meta": _meta(request)}
