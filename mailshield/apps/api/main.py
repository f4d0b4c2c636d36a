from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailshield.apps.api.errors import (
    http_exception_handler,
    mailshield_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from mailshield.apps.api.response import API_VERSION
from mailshield.apps.api.routes.audit import router as audit_router
from mailshield.apps.api.routes.health import router as health_router
from mailshield.apps.api.routes.ops import router as ops_router
from mailshield.apps.api.routes.remediation import router as remediation_router
from mailshield.apps.api.routes.webhooks import router as webhooks_router
from mailshield.apps.api.routes.workers import router as workers_router
from mailshield.core.errors import MailShieldError
from mailshield.core.logging import configure_logging
from mailshield.persistence.db import SessionLocal
from mailshield.services.queue.work_queue import get_redis_pool
from mailshield.services.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the API app; tests pass a prebuilt runtime to skip Postgres and Redis."""
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = runtime is None
        if owned:
            app.state.runtime = build_runtime(redis=await get_redis_pool(), session_factory=SessionLocal)
        else:
            app.state.runtime = runtime
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()

    app = FastAPI(title="MailShield API", lifespan=lifespan)
    if runtime is not None:
        # Available before lifespan runs, e.g. under ASGITransport.
        app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "http_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(MailShieldError, mailshield_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        webhooks_router,
        workers_router,
        remediation_router,
        ops_router,
        audit_router,
        health_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Bearer auth on everything except the provider-facing and health routes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="MailShield API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path.startswith("/v1/webhooks") or path == "/v1/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
