from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.apps.api.deps import (
    USER_MGMT_PERMISSION,
    Principal,
    get_chain,
    get_db,
    get_principal,
    require_permission,
)
from fabricsec.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fabricsec.apps.api.response import SuccessEnvelope, success_response
from fabricsec.core.clock import ensure_utc, utcnow
from fabricsec.services.audit import AuditChain
from fabricsec.services.authz.resolver import (
    assign_role,
    has_permission,
    list_user_roles,
    resolve_permissions,
    revoke_role,
)


router = APIRouter(prefix="/authz", tags=["authz"], responses=DEFAULT_ERROR_RESPONSES)


class PermissionResponse(BaseModel):
    id: str
    name: str
    resource_type: str
    action: str
    resource_pattern: str


class RoleResponse(BaseModel):
    id: str
    name: str
    level: int


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    as_of: str
    roles: list[RoleResponse]
    permissions: list[PermissionResponse]


class PermissionCheckResponse(BaseModel):
    user_id: str
    permission_name: str
    as_of: str
    granted: bool


class AssignRoleRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=50)
    role_id: str = Field(min_length=1, max_length=50)
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class AssignRoleResponse(BaseModel):
    assignment_id: str
    audit_record_id: int
    correlation_id: str | None


class RevokeRoleRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=50)
    role_id: str = Field(min_length=1, max_length=50)
    reason: str | None = Field(default=None, max_length=500)


class RevokeRoleResponse(BaseModel):
    revoked: bool
    assignment_ids: list[str]
    audit_record_id: int | None
    correlation_id: str | None


@router.get(
    "/users/{user_id}/permissions",
    response_model=SuccessEnvelope[EffectivePermissionsResponse],
)
async def get_effective_permissions(
    request: Request,
    user_id: str,
    as_of: datetime | None = Query(default=None),
    _principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Point-in-time view; omitting as_of means "now".
    resolved_as_of = ensure_utc(as_of) if as_of is not None else utcnow()
    permissions = await resolve_permissions(db, user_id=user_id, as_of=resolved_as_of)
    roles = await list_user_roles(db, user_id=user_id, as_of=resolved_as_of)
    payload = EffectivePermissionsResponse(
        user_id=user_id,
        as_of=resolved_as_of.isoformat(),
        roles=[RoleResponse(id=role.id, name=role.name, level=role.level) for role in roles],
        permissions=[
            PermissionResponse(
                id=grant.id,
                name=grant.name,
                resource_type=grant.resource_type,
                action=grant.action,
                resource_pattern=grant.resource_pattern,
            )
            for grant in sorted(permissions, key=lambda item: item.name)
        ],
    )
    return success_response(request=request, data=payload)


@router.get(
    "/users/{user_id}/permissions/{permission_name}",
    response_model=SuccessEnvelope[PermissionCheckResponse],
)
async def check_permission(
    request: Request,
    user_id: str,
    permission_name: str,
    as_of: datetime | None = Query(default=None),
    _principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resolved_as_of = ensure_utc(as_of) if as_of is not None else utcnow()
    granted = await has_permission(
        db, user_id=user_id, permission_name=permission_name, as_of=resolved_as_of
    )
    payload = PermissionCheckResponse(
        user_id=user_id,
        permission_name=permission_name,
        as_of=resolved_as_of.isoformat(),
        granted=granted,
    )
    return success_response(request=request, data=payload)


@router.post(
    "/assignments",
    status_code=201,
    response_model=SuccessEnvelope[AssignRoleResponse],
)
async def create_assignment(
    request: Request,
    body: AssignRoleRequest,
    principal: Principal = Depends(require_permission(USER_MGMT_PERMISSION)),
    db: AsyncSession = Depends(get_db),
    chain: AuditChain = Depends(get_chain),
) -> dict:
    # Domain errors (conflict, not found, audit failure) map through the app handlers.
    result = await assign_role(
        db,
        user_id=body.user_id,
        role_id=body.role_id,
        assigned_by=principal.user_id,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
        reason=body.reason,
        correlation_id=getattr(request.state, "correlation_id", None),
        chain=chain,
    )
    payload = AssignRoleResponse(
        assignment_id=result.assignment_id,
        audit_record_id=result.audit_record_id,
        correlation_id=result.correlation_id,
    )
    return success_response(request=request, data=payload)


@router.post(
    "/assignments/revoke",
    response_model=SuccessEnvelope[RevokeRoleResponse],
)
async def revoke_assignment(
    request: Request,
    body: RevokeRoleRequest,
    principal: Principal = Depends(require_permission(USER_MGMT_PERMISSION)),
    db: AsyncSession = Depends(get_db),
    chain: AuditChain = Depends(get_chain),
) -> dict:
    result = await revoke_role(
        db,
        user_id=body.user_id,
        role_id=body.role_id,
        revoked_by=principal.user_id,
        reason=body.reason,
        correlation_id=getattr(request.state, "correlation_id", None),
        chain=chain,
    )
    payload = RevokeRoleResponse(
        revoked=result.revoked,
        assignment_ids=result.assignment_ids,
        audit_record_id=result.audit_record_id,
        correlation_id=result.correlation_id,
    )
    return success_response(request=request, data=payload)
