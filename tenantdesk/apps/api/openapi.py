from __future__ import annotations

from typing import Any

from tenantdesk.apps.api.response import ErrorEnvelope


def _error_example(
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    if retryable is not None:
        payload["error"]["retryable"] = retryable
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="insufficient permission"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Workspace not found"),
    ),
    409: _response(
        "Conflict",
        _error_example(code="CONFLICT", message="Role name already exists in this workspace"),
    ),
    422: _response(
        "Validation error",
        _error_example(
            code="VALIDATION_ERROR",
            message="Some role or user references could not be resolved",
            details={"invalid_roles": ["r2"]},
        ),
    ),
    500: _response(
        "Internal server error",
        _error_example(
            code="INTERNAL_ERROR",
            message="Storage timeout during ticket.update",
            retryable=True,
        ),
    ),
}
