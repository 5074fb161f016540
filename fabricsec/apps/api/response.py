from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from fabricsec.core.logging import get_correlation_id


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Request and correlation ids let callers join a response to its audit trail.
    request_id: str
    correlation_id: str | None = None
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def request_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None) or get_correlation_id()


def _meta(request: Request) -> ResponseMeta:
    return ResponseMeta(request_id=get_request_id(request), correlation_id=request_correlation_id(request))


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request).model_dump()}
