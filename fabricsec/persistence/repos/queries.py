from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.domain.models import QueryExecutionRecord


async def list_executions(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    correlation_id: str | None = None,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[QueryExecutionRecord]:
    stmt = select(QueryExecutionRecord)
    if user_id:
        stmt = stmt.where(QueryExecutionRecord.user_id == user_id)
    if correlation_id:
        stmt = stmt.where(QueryExecutionRecord.correlation_id == correlation_id)
    if status:
        stmt = stmt.where(QueryExecutionRecord.status == status)
    stmt = stmt.order_by(QueryExecutionRecord.started_at.desc(), QueryExecutionRecord.id.desc())
    result = await session.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


async def get_execution(session: AsyncSession, *, execution_id: str) -> QueryExecutionRecord | None:
    result = await session.execute(
        select(QueryExecutionRecord).where(QueryExecutionRecord.id == execution_id)
    )
    return result.scalar_one_or_none()
