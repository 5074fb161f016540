from __future__ import annotations

from typing import AsyncGenerator, Callable, Awaitable

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.persistence.db import get_session
from fabricsec.services.audit import AuditChain, get_audit_chain
from fabricsec.services.authz.resolver import has_permission
from fabricsec.services.query.gateway import QueryExecutionGateway, get_query_gateway


# Grants required for the administrative surfaces.
USER_MGMT_PERMISSION = "USER_MGMT_ALL"
AUDIT_VIEW_PERMISSION = "AUDIT_VIEW"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_chain() -> AuditChain:
    return get_audit_chain()


def get_gateway() -> QueryExecutionGateway:
    return get_query_gateway()


class Principal(BaseModel):
    # Identity asserted by the upstream authentication proxy.
    user_id: str
    session_id: str | None = None
    ip_address: str | None = None


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_principal(
    request: Request,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_session_id: str | None = Header(default=None, alias="X-Session-Id"),
) -> Principal:
    if not x_user_id or not x_user_id.strip():
        raise _auth_error("Missing X-User-Id header")
    client_host = request.client.host if request.client else None
    return Principal(user_id=x_user_id.strip(), session_id=x_session_id, ip_address=client_host)


def require_permission(permission_name: str) -> Callable[..., Awaitable[Principal]]:
    # Dependency factory enforcing an explicit, currently effective grant.
    async def _dependency(
        principal: Principal = Depends(get_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        allowed = await has_permission(db, user_id=principal.user_id, permission_name=permission_name)
        if not allowed:
            raise _forbidden_error(f"{permission_name} permission required")
        return principal

    return _dependency
