from __future__ import annotations

from typing import Any

from mailshield.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    404: _error_response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

REMEDIATION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _error_response("Invalid transition", code="INVALID_TRANSITION", message="cannot release a message in state deleted"),
    502: _error_response("Provider failure", code="TRANSIENT", message="gmail returned 503"),
}
