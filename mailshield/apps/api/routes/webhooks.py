from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.apps.api.deps import get_db, get_runtime
from mailshield.apps.api.response import WebhookAck
from mailshield.services.ingest.push_auth import PushAuthError
from mailshield.services.runtime import Runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _ack(queued: int) -> JSONResponse:
    return JSONResponse(WebhookAck.for_count(queued).model_dump())


async def _read_payload(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


async def _handle(
    request: Request,
    *,
    provider: str,
    runtime: Runtime,
    session: AsyncSession,
    verify_push: bool = False,
) -> Response:
    """Acknowledge every delivery with 200; providers retry anything else aggressively."""
    payload = await _read_payload(request)
    gateway = runtime.gateways[provider]
    token = gateway.validation_token(payload, request.query_params)
    if token is not None:
        # Graph subscription handshake: echo the token as plain text.
        return PlainTextResponse(token)
    if verify_push:
        try:
            await runtime.push_verifier.verify(request.headers.get("Authorization"))
        except PushAuthError as exc:
            logger.warning("webhook_push_auth_failed provider=%s reason=%s", provider, exc)
            return _ack(0)
    try:
        items = await gateway.handle_notification(session, payload)
    except Exception as exc:  # noqa: BLE001 - the next notification re-diffs from the stored cursor
        logger.error("webhook_enqueue_failed provider=%s", provider, exc_info=exc)
        return _ack(0)
    return _ack(len(items))


@router.post("/gmail", response_model=WebhookAck)
async def gmail_webhook(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db),
) -> Response:
    return await _handle(request, provider="gmail", runtime=runtime, session=session, verify_push=True)


@router.post("/microsoft", response_model=WebhookAck)
async def microsoft_webhook(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db),
) -> Response:
    return await _handle(request, provider="o365", runtime=runtime, session=session)


@router.post("/domain/google", response_model=WebhookAck)
async def google_workspace_webhook(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db),
) -> Response:
    return await _handle(request, provider="google_workspace", runtime=runtime, session=session, verify_push=True)


@router.post("/domain/microsoft", response_model=WebhookAck)
async def microsoft_365_webhook(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_db),
) -> Response:
    return await _handle(request, provider="microsoft_365", runtime=runtime, session=session)
