from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.core.clock import ensure_utc, utcnow
from fabricsec.core.errors import ConflictError, InvalidRequestError, NotFoundError
from fabricsec.core.logging import get_correlation_id
from fabricsec.domain.models import Permission, Role, UserRoleAssignment
from fabricsec.domain.types import AuditEventType, PermissionAction, RiskLevel, Severity
from fabricsec.persistence.repos import authz as authz_repo
from fabricsec.services.audit import AuditChain, AuditEvent, get_audit_chain
from fabricsec.services.authz.patterns import resource_matches


logger = logging.getLogger(__name__)

# Only QUERY-typed grants authorize ad-hoc queries; CONFIG_READ and friends do not.
QUERY_RESOURCE_TYPE = "QUERY"
QUERY_ACTIONS = frozenset(
    {PermissionAction.READ.value, PermissionAction.EXECUTE.value, PermissionAction.ALL.value}
)


@dataclass(frozen=True)
class PermissionGrant:
    # Detached snapshot of a Permission row; safe to hand across sessions.
    id: str
    name: str
    resource_type: str
    action: str
    resource_pattern: str

    @classmethod
    def from_row(cls, row: Permission) -> "PermissionGrant":
        return cls(
            id=row.id,
            name=row.name,
            resource_type=row.resource_type,
            action=row.action,
            resource_pattern=row.resource_pattern,
        )


@dataclass(frozen=True)
class AssignmentResult:
    assignment_id: str
    audit_record_id: int
    correlation_id: str | None


@dataclass(frozen=True)
class RevocationResult:
    revoked: bool
    assignment_ids: list[str]
    audit_record_id: int | None
    correlation_id: str | None


def _resolve_as_of(as_of: datetime | None) -> datetime:
    return ensure_utc(as_of) if as_of is not None else utcnow()


async def resolve_permissions(
    session: AsyncSession,
    *,
    user_id: str,
    as_of: datetime | None = None,
) -> frozenset[PermissionGrant]:
    # Unknown users resolve to the empty set; callers treat empty as deny.
    rows = await authz_repo.list_effective_permissions(
        session, user_id=user_id, as_of=_resolve_as_of(as_of)
    )
    grants: dict[str, PermissionGrant] = {}
    for row in rows:
        grants.setdefault(row.id, PermissionGrant.from_row(row))
    return frozenset(grants.values())


async def has_permission(
    session: AsyncSession,
    *,
    user_id: str,
    permission_name: str,
    as_of: datetime | None = None,
) -> bool:
    permission_id = await authz_repo.find_effective_permission_id(
        session,
        user_id=user_id,
        permission_name=permission_name,
        as_of=_resolve_as_of(as_of),
    )
    return permission_id is not None


async def list_user_roles(
    session: AsyncSession,
    *,
    user_id: str,
    as_of: datetime | None = None,
) -> list[Role]:
    return await authz_repo.list_effective_roles(
        session, user_id=user_id, as_of=_resolve_as_of(as_of)
    )


def authorized_patterns(
    permissions: frozenset[PermissionGrant] | set[PermissionGrant],
    *,
    actions: frozenset[str] = QUERY_ACTIONS,
    resource_type: str = QUERY_RESOURCE_TYPE,
) -> list[str]:
    # Resource patterns the holder may query, in stable order.
    return sorted(
        {
            grant.resource_pattern
            for grant in permissions
            if grant.action in actions and grant.resource_type == resource_type
        }
    )


def is_resource_authorized(
    permissions: frozenset[PermissionGrant] | set[PermissionGrant],
    resource: str,
    *,
    actions: frozenset[str] = QUERY_ACTIONS,
) -> bool:
    return any(resource_matches(pattern, resource) for pattern in authorized_patterns(permissions, actions=actions))


async def assign_role(
    session: AsyncSession,
    *,
    user_id: str,
    role_id: str,
    assigned_by: str,
    effective_from: datetime | None = None,
    effective_until: datetime | None = None,
    reason: str | None = None,
    correlation_id: str | None = None,
    chain: AuditChain | None = None,
) -> AssignmentResult:
    """Grant ``role_id`` to ``user_id`` over ``[effective_from, effective_until)``.

    The new row and its ROLE_ASSIGNMENT audit record commit together; if the
    audit append fails nothing is persisted and ``AuditWriteError`` propagates.
    """
    chain = chain or get_audit_chain()
    correlation_id = correlation_id or get_correlation_id()
    now = utcnow()
    window_start = ensure_utc(effective_from) if effective_from is not None else now
    window_end = ensure_utc(effective_until) if effective_until is not None else None
    if window_end is not None and window_end <= window_start:
        raise InvalidRequestError(
            "effective_until must be later than effective_from", correlation_id=correlation_id
        )

    user = await authz_repo.get_user(session, user_id=user_id, for_update=True)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}", correlation_id=correlation_id)
    role = await authz_repo.get_role(session, role_id=role_id)
    if role is None:
        raise NotFoundError(f"Role not found: {role_id}", correlation_id=correlation_id)

    overlapping = await authz_repo.list_overlapping_assignments(
        session,
        user_id=user_id,
        role_id=role_id,
        effective_from=window_start,
        effective_until=window_end,
    )
    if overlapping:
        await session.rollback()
        logger.info(
            "role_assign_conflict user_id=%s role_id=%s existing=%s",
            user_id,
            role_id,
            overlapping[0].id,
        )
        raise ConflictError(
            f"User {user_id} already holds role {role_id} in an overlapping window",
            correlation_id=correlation_id,
        )

    assignment = UserRoleAssignment(
        id=uuid4().hex,
        user_id=user_id,
        role_id=role_id,
        assigned_by=assigned_by,
        assigned_at=now,
        effective_from=window_start,
        effective_until=window_end,
        is_active=True,
        reason=reason,
    )
    session.add(assignment)
    record = await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.ROLE_ASSIGNMENT.value,
            event_subtype="GRANT",
            severity=Severity.INFO.value,
            user_id=assigned_by,
            payload={
                "assignment_id": assignment.id,
                "target_user_id": user_id,
                "role_id": role_id,
                "role_name": role.name,
                "role_level": role.level,
                "effective_from": window_start.isoformat(),
                "effective_until": window_end.isoformat() if window_end else None,
                "reason": reason,
            },
            security_event=True,
            compliance_event=True,
            # Granting the most privileged tier is itself a risk signal.
            risk_level=RiskLevel.HIGH.value if role.level == 1 else RiskLevel.MEDIUM.value,
            correlation_id=correlation_id,
        ),
    )
    logger.info(
        "role_assigned user_id=%s role_id=%s assignment_id=%s audit_id=%s",
        user_id,
        role_id,
        assignment.id,
        record.id,
    )
    return AssignmentResult(
        assignment_id=assignment.id,
        audit_record_id=record.id,
        correlation_id=record.correlation_id,
    )


async def revoke_role(
    session: AsyncSession,
    *,
    user_id: str,
    role_id: str,
    revoked_by: str,
    reason: str | None = None,
    correlation_id: str | None = None,
    chain: AuditChain | None = None,
) -> RevocationResult:
    # Idempotent: nothing open means nothing changes and nothing is audited.
    # Windows that already ended keep their recorded end.
    chain = chain or get_audit_chain()
    correlation_id = correlation_id or get_correlation_id()
    now = utcnow()
    active = await authz_repo.list_open_assignments(session, user_id=user_id, role_id=role_id, now=now)
    if not active:
        logger.info("role_revoke_noop user_id=%s role_id=%s", user_id, role_id)
        return RevocationResult(
            revoked=False, assignment_ids=[], audit_record_id=None, correlation_id=correlation_id
        )

    for assignment in active:
        assignment.is_active = False
        # Future-dated windows that never started keep their own start as the close.
        start = ensure_utc(assignment.effective_from)
        assignment.effective_until = now if start <= now else start
        assignment.revoked_by = revoked_by
        assignment.revoke_reason = reason
    assignment_ids = [assignment.id for assignment in active]

    record = await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.ROLE_REVOCATION.value,
            event_subtype="REVOKE",
            severity=Severity.INFO.value,
            user_id=revoked_by,
            payload={
                "assignment_ids": assignment_ids,
                "target_user_id": user_id,
                "role_id": role_id,
                "revoked_at": now.isoformat(),
                "reason": reason,
            },
            security_event=True,
            compliance_event=True,
            risk_level=RiskLevel.MEDIUM.value,
            correlation_id=correlation_id,
        ),
    )
    logger.info(
        "role_revoked user_id=%s role_id=%s assignments=%s audit_id=%s",
        user_id,
        role_id,
        len(assignment_ids),
        record.id,
    )
    return RevocationResult(
        revoked=True,
        assignment_ids=assignment_ids,
        audit_record_id=record.id,
        correlation_id=record.correlation_id,
    )
