from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.domain.models import (
    Permission,
    Role,
    RolePermission,
    User,
    UserRoleAssignment,
)


def effective_at(as_of: datetime):
    # Half-open window [effective_from, effective_until); null until is open-ended.
    return and_(
        UserRoleAssignment.is_active.is_(True),
        UserRoleAssignment.effective_from <= as_of,
        or_(
            UserRoleAssignment.effective_until.is_(None),
            UserRoleAssignment.effective_until > as_of,
        ),
    )


async def get_user(session: AsyncSession, *, user_id: str, for_update: bool = False) -> User | None:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        # Serializes concurrent grants for the same user on Postgres; ignored by SQLite.
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_role(session: AsyncSession, *, role_id: str) -> Role | None:
    result = await session.execute(select(Role).where(Role.id == role_id))
    return result.scalar_one_or_none()


async def list_effective_permissions(
    session: AsyncSession,
    *,
    user_id: str,
    as_of: datetime,
) -> list[Permission]:
    # Explicit grants only; parent roles contribute nothing at resolution time.
    result = await session.execute(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRoleAssignment, UserRoleAssignment.role_id == RolePermission.role_id)
        .where(UserRoleAssignment.user_id == user_id, effective_at(as_of))
        .order_by(Permission.name.asc())
    )
    return list(result.scalars().all())


async def find_effective_permission_id(
    session: AsyncSession,
    *,
    user_id: str,
    permission_name: str,
    as_of: datetime,
) -> str | None:
    result = await session.execute(
        select(Permission.id)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRoleAssignment, UserRoleAssignment.role_id == RolePermission.role_id)
        .where(
            UserRoleAssignment.user_id == user_id,
            Permission.name == permission_name,
            effective_at(as_of),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_effective_roles(
    session: AsyncSession,
    *,
    user_id: str,
    as_of: datetime,
) -> list[Role]:
    result = await session.execute(
        select(Role)
        .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
        .where(UserRoleAssignment.user_id == user_id, effective_at(as_of))
        .distinct()
        .order_by(Role.level.asc(), Role.name.asc())
    )
    return list(result.scalars().all())


async def list_overlapping_assignments(
    session: AsyncSession,
    *,
    user_id: str,
    role_id: str,
    effective_from: datetime,
    effective_until: datetime | None,
) -> list[UserRoleAssignment]:
    # Active windows intersecting [effective_from, effective_until).
    stmt = select(UserRoleAssignment).where(
        UserRoleAssignment.user_id == user_id,
        UserRoleAssignment.role_id == role_id,
        UserRoleAssignment.is_active.is_(True),
        or_(
            UserRoleAssignment.effective_until.is_(None),
            UserRoleAssignment.effective_until > effective_from,
        ),
    )
    if effective_until is not None:
        stmt = stmt.where(UserRoleAssignment.effective_from < effective_until)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_open_assignments(
    session: AsyncSession,
    *,
    user_id: str,
    role_id: str,
    now: datetime,
) -> list[UserRoleAssignment]:
    # Active rows whose window has not ended yet; current and future-dated alike.
    result = await session.execute(
        select(UserRoleAssignment).where(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active.is_(True),
            or_(
                UserRoleAssignment.effective_until.is_(None),
                UserRoleAssignment.effective_until > now,
            ),
        )
    )
    return list(result.scalars().all())


async def list_assignments_for_user(session: AsyncSession, *, user_id: str) -> list[UserRoleAssignment]:
    result = await session.execute(
        select(UserRoleAssignment)
        .where(UserRoleAssignment.user_id == user_id)
        .order_by(UserRoleAssignment.assigned_at.asc())
    )
    return list(result.scalars().all())
