from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.core.config import get_settings
from mailshield.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_db(runtime: Runtime = Depends(get_runtime)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with runtime.session_factory() as session:
        yield session


class AdminContext(BaseModel):
    # Identity comes from the calling admin surface; this service only trusts the bearer token.
    tenant_id: str
    actor_id: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_matches(authorization: str | None, secret: str | None) -> bool:
    if not secret or not authorization or not authorization.lower().startswith("bearer "):
        return False
    presented = authorization.split(" ", 1)[1].strip()
    return hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))


async def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    if not _bearer_matches(authorization, get_settings().cron_secret):
        raise _auth_error("Missing or invalid cron secret")


async def require_admin_token(authorization: str | None = Header(default=None)) -> None:
    if not _bearer_matches(authorization, get_settings().admin_api_token):
        raise _auth_error("Missing or invalid admin token")


async def require_admin(
    _: None = Depends(require_admin_token),
    x_tenant_id: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> AdminContext:
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return AdminContext(tenant_id=x_tenant_id, actor_id=x_actor_id)
