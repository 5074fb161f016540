from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fabricsec.apps.api.response import error_response
from fabricsec.core.errors import (
    AuditWriteError,
    ConflictError,
    FabricSecError,
    InvalidRequestError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Status codes for domain errors; anything unlisted is a 500.
_DOMAIN_STATUS: tuple[tuple[type[FabricSecError], int, str], ...] = (
    (ConflictError, 409, "CONFLICT"),
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidRequestError, 400, "VALIDATION_ERROR"),
    (AuditWriteError, 503, "AUDIT_WRITE_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: FabricSecError) -> JSONResponse:
    # Domain errors carry their correlation id so callers can find the audit trail.
    status_code, code = 500, exc.code.value
    for error_type, mapped_status, mapped_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    if status_code >= 500:
        logger.error("domain_error code=%s path=%s", code, request.url.path, exc_info=exc)
    details = {"correlation_id": exc.correlation_id} if exc.correlation_id else None
    payload = error_response(request=request, code=code, message=exc.message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
