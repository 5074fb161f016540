from __future__ import annotations

from typing import Any

from fabricsec.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "correlation_id": "corr_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="VALIDATION_ERROR", message="effective_until must be later than effective_from"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing X-User-Id header"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="USER_MGMT_ALL permission required"),
    404: _response("Not found", code="NOT_FOUND", message="User not found: u-123"),
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="User u-123 already holds role ANALYST in an overlapping window",
        details={"correlation_id": "corr_example"},
    ),
    422: _response("Request validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    503: _response(
        "Audit unavailable",
        code="AUDIT_WRITE_ERROR",
        message="Audit record could not be written",
        details={"correlation_id": "corr_example"},
    ),
}
