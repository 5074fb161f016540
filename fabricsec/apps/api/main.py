from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fabricsec.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fabricsec.apps.api.response import API_VERSION
from fabricsec.apps.api.routes.audit import router as audit_router
from fabricsec.apps.api.routes.authz import router as authz_router
from fabricsec.apps.api.routes.health import router as health_router
from fabricsec.apps.api.routes.queries import router as queries_router
from fabricsec.core.errors import FabricSecError
from fabricsec.core.logging import configure_logging, correlation_scope
from fabricsec.services.telemetry import record_request


_CORRELATION_HEADER = "X-Correlation-Id"
_CORRELATION_ID_MAX_LENGTH = 100


def _incoming_correlation_id(request: Request) -> str | None:
    # Oversized ids would not fit the audit column; treat them as absent.
    value = (request.headers.get(_CORRELATION_HEADER) or "").strip()
    if not value or len(value) > _CORRELATION_ID_MAX_LENGTH:
        return None
    return value


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="FabricSec API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        with correlation_scope(_incoming_correlation_id(request)) as correlation_id:
            request.state.correlation_id = correlation_id
            start = time.monotonic()
            response = await call_next(request)
            latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers[_CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(FabricSecError)
    async def _domain_exception_handler(request: Request, exc: FabricSecError):
        return await domain_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(authz_router, prefix=f"/{API_VERSION}")
    # Expose audit endpoints for security investigations.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(queries_router, prefix=f"/{API_VERSION}")
    # Health stays unversioned for load balancers.
    app.include_router(health_router)

    return app


app = create_app()
