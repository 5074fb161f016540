from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.domain.models import Permission, Role, RolePermission


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleSeed:
    id: str
    name: str
    description: str
    level: int
    parent_role_id: str | None


@dataclass(frozen=True)
class PermissionSeed:
    id: str
    name: str
    resource_type: str
    action: str
    resource_pattern: str
    description: str


# Admin > Manager > Analyst > Operator > Viewer; the parent link is documentary only.
SYSTEM_ROLES: tuple[RoleSeed, ...] = (
    RoleSeed("ADMIN", "System Administrator", "Full system access with user management capabilities", 1, None),
    RoleSeed("MANAGER", "Business Manager", "Manage configurations and approve changes", 2, "ADMIN"),
    RoleSeed("ANALYST", "Business Analyst", "Create and modify batch configurations", 3, "MANAGER"),
    RoleSeed("OPERATOR", "System Operator", "Execute batch jobs and monitor operations", 4, "ANALYST"),
    RoleSeed("VIEWER", "Read-Only User", "View configurations and job status only", 5, "OPERATOR"),
)

SYSTEM_PERMISSIONS: tuple[PermissionSeed, ...] = (
    PermissionSeed("USER_MGMT_ALL", "USER_MGMT_ALL", "USER", "ALL", "*", "Complete user management access"),
    PermissionSeed("CONFIG_CREATE", "CONFIG_CREATE", "BATCH_CONFIG", "CREATE", "*", "Create new batch configurations"),
    PermissionSeed("CONFIG_READ", "CONFIG_READ", "BATCH_CONFIG", "READ", "*", "View batch configurations"),
    PermissionSeed("CONFIG_UPDATE", "CONFIG_UPDATE", "BATCH_CONFIG", "UPDATE", "*", "Modify existing configurations"),
    PermissionSeed("CONFIG_DELETE", "CONFIG_DELETE", "BATCH_CONFIG", "DELETE", "*", "Remove configurations"),
    PermissionSeed("JOB_EXECUTE", "JOB_EXECUTE", "BATCH_JOB", "EXECUTE", "*", "Run batch jobs"),
    PermissionSeed("JOB_MONITOR", "JOB_MONITOR", "BATCH_JOB", "READ", "*", "View job execution status"),
    PermissionSeed("TEMPLATE_MANAGE", "TEMPLATE_MANAGE", "TEMPLATE", "ALL", "*", "Full template management"),
    PermissionSeed("SYSTEM_CONFIG", "SYSTEM_CONFIG", "SYSTEM", "ALL", "*", "System-level configuration access"),
    PermissionSeed("AUDIT_VIEW", "AUDIT_VIEW", "AUDIT", "READ", "*", "Access audit and security logs"),
    PermissionSeed("QUERY_EXECUTE", "QUERY_EXECUTE", "QUERY", "EXECUTE", "*", "Execute catalogued master queries"),
    PermissionSeed("QUERY_READ", "QUERY_READ", "QUERY", "READ", "*", "Run read queries against source systems"),
    PermissionSeed("REPORTS_READ", "REPORTS_READ", "QUERY", "READ", "reports/*", "Run read queries against reports"),
)

# Grants are fully materialized per role.
SYSTEM_GRANTS: dict[str, tuple[str, ...]] = {
    "ADMIN": (
        "USER_MGMT_ALL",
        "CONFIG_CREATE",
        "CONFIG_READ",
        "CONFIG_UPDATE",
        "CONFIG_DELETE",
        "JOB_EXECUTE",
        "JOB_MONITOR",
        "TEMPLATE_MANAGE",
        "SYSTEM_CONFIG",
        "AUDIT_VIEW",
        "QUERY_EXECUTE",
        "QUERY_READ",
    ),
    "MANAGER": (
        "CONFIG_CREATE",
        "CONFIG_READ",
        "CONFIG_UPDATE",
        "JOB_EXECUTE",
        "JOB_MONITOR",
        "TEMPLATE_MANAGE",
        "AUDIT_VIEW",
        "QUERY_EXECUTE",
        "QUERY_READ",
    ),
    "ANALYST": (
        "CONFIG_CREATE",
        "CONFIG_READ",
        "CONFIG_UPDATE",
        "JOB_MONITOR",
        "TEMPLATE_MANAGE",
        "QUERY_READ",
    ),
    "OPERATOR": ("CONFIG_READ", "JOB_EXECUTE", "JOB_MONITOR", "QUERY_EXECUTE"),
    "VIEWER": ("CONFIG_READ", "JOB_MONITOR", "REPORTS_READ"),
}


@dataclass(frozen=True)
class SeedSummary:
    roles_created: int
    permissions_created: int
    grants_created: int


async def seed_default_roles(session: AsyncSession, *, granted_by: str = "SYSTEM") -> SeedSummary:
    # Idempotent: existing rows are left untouched, missing ones are inserted.
    existing_roles = set((await session.execute(select(Role.id))).scalars().all())
    existing_permissions = set((await session.execute(select(Permission.id))).scalars().all())
    existing_grants = {
        (row.role_id, row.permission_id)
        for row in (await session.execute(select(RolePermission))).scalars().all()
    }

    roles_created = 0
    for seed in SYSTEM_ROLES:
        if seed.id in existing_roles:
            continue
        session.add(
            Role(
                id=seed.id,
                name=seed.name,
                description=seed.description,
                level=seed.level,
                parent_role_id=seed.parent_role_id,
                is_system_role=True,
                created_by=granted_by,
            )
        )
        # Parents first so the self-referencing foreign key is satisfied.
        await session.flush()
        roles_created += 1

    permissions_created = 0
    for seed in SYSTEM_PERMISSIONS:
        if seed.id in existing_permissions:
            continue
        session.add(
            Permission(
                id=seed.id,
                name=seed.name,
                resource_type=seed.resource_type,
                action=seed.action,
                resource_pattern=seed.resource_pattern,
                description=seed.description,
            )
        )
        permissions_created += 1
    await session.flush()

    grants_created = 0
    for role_id, permission_ids in SYSTEM_GRANTS.items():
        for permission_id in permission_ids:
            if (role_id, permission_id) in existing_grants:
                continue
            session.add(
                RolePermission(
                    id=f"{role_id}_{permission_id}",
                    role_id=role_id,
                    permission_id=permission_id,
                    granted_by=granted_by,
                )
            )
            grants_created += 1

    await session.commit()
    logger.info(
        "role_catalogue_seeded roles=%s permissions=%s grants=%s",
        roles_created,
        permissions_created,
        grants_created,
    )
    return SeedSummary(
        roles_created=roles_created,
        permissions_created=permissions_created,
        grants_created=grants_created,
    )
