from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fabricsec.domain.models import AuditRecord
from fabricsec.services.audit import AuditChain
from fabricsec.services.authz.resolver import assign_role
from fabricsec.services.users import provision_user


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    chain: AuditChain,
    *,
    user_id: str,
    role_id: str | None = None,
    effective_from: datetime | None = None,
    effective_until: datetime | None = None,
) -> str:
    # Provision a user and optionally grant one role, each in its own session.
    async with session_factory() as session:
        await provision_user(session, user_id=user_id, username=user_id, chain=chain)
    if role_id is not None:
        async with session_factory() as session:
            await assign_role(
                session,
                user_id=user_id,
                role_id=role_id,
                assigned_by="test-admin",
                effective_from=effective_from,
                effective_until=effective_until,
                chain=chain,
            )
    return user_id


async def count_audit_records(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    event_type: str | None = None,
    correlation_id: str | None = None,
) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(AuditRecord)
        if event_type:
            stmt = stmt.where(AuditRecord.event_type == event_type)
        if correlation_id:
            stmt = stmt.where(AuditRecord.correlation_id == correlation_id)
        result = await session.execute(stmt)
        return int(result.scalar() or 0)


async def fetch_audit_records(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    event_type: str | None = None,
) -> list[AuditRecord]:
    async with session_factory() as session:
        stmt = select(AuditRecord).order_by(AuditRecord.id.asc())
        if event_type:
            stmt = stmt.where(AuditRecord.event_type == event_type)
        result = await session.execute(stmt)
        return list(result.scalars().all())
