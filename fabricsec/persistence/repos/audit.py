from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.domain.models import AuditChainHead, AuditRecord


async def list_records(
    session: AsyncSession,
    *,
    event_type: str | None = None,
    correlation_id: str | None = None,
    user_id: str | None = None,
    security_only: bool = False,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditRecord]:
    stmt = select(AuditRecord)
    if event_type:
        stmt = stmt.where(AuditRecord.event_type == event_type)
    if correlation_id:
        stmt = stmt.where(AuditRecord.correlation_id == correlation_id)
    if user_id:
        stmt = stmt.where(AuditRecord.user_id == user_id)
    if security_only:
        stmt = stmt.where(AuditRecord.security_event_flag.is_(True))
    if occurred_from:
        stmt = stmt.where(AuditRecord.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditRecord.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditRecord.occurred_at.desc(), AuditRecord.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_record(session: AsyncSession, *, record_id: int) -> AuditRecord | None:
    result = await session.execute(select(AuditRecord).where(AuditRecord.id == record_id))
    return result.scalar_one_or_none()


async def count_records(session: AsyncSession, *, correlation_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(AuditRecord)
    if correlation_id:
        stmt = stmt.where(AuditRecord.correlation_id == correlation_id)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def fetch_chain_page(
    session: AsyncSession,
    *,
    after: tuple[datetime, int] | None,
    since: datetime | None,
    limit: int,
) -> list[AuditRecord]:
    # Keyset pagination in chain order so verification never loads the whole table.
    stmt = select(AuditRecord)
    if since is not None:
        stmt = stmt.where(AuditRecord.occurred_at >= since)
    if after is not None:
        last_ts, last_id = after
        stmt = stmt.where(
            or_(
                AuditRecord.occurred_at > last_ts,
                and_(AuditRecord.occurred_at == last_ts, AuditRecord.id > last_id),
            )
        )
    stmt = (
        stmt.order_by(AuditRecord.occurred_at.asc(), AuditRecord.id.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_record_before(session: AsyncSession, *, occurred_at: datetime) -> AuditRecord | None:
    # Predecessor of a verification window, used to seed the expected previous hash.
    result = await session.execute(
        select(AuditRecord)
        .where(AuditRecord.occurred_at < occurred_at)
        .order_by(AuditRecord.occurred_at.desc(), AuditRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_record(session: AsyncSession) -> AuditRecord | None:
    result = await session.execute(select(AuditRecord).order_by(AuditRecord.id.desc()).limit(1))
    return result.scalar_one_or_none()


async def fetch_retention_payloads(
    session: AsyncSession,
    *,
    event_type: str,
    after_id: int,
    limit: int,
) -> list[tuple[int, dict]]:
    # Keyset over (id); payload column only, no ORM identities to expunge.
    result = await session.execute(
        select(AuditRecord.id, AuditRecord.payload_json)
        .where(AuditRecord.event_type == event_type, AuditRecord.id > after_id)
        .order_by(AuditRecord.id.asc())
        .limit(limit)
    )
    return [(record_id, payload or {}) for record_id, payload in result.all()]


async def get_chain_head(session: AsyncSession, *, chain_id: str) -> AuditChainHead | None:
    # populate_existing: the CAS update bypasses the identity map.
    result = await session.execute(
        select(AuditChainHead)
        .where(AuditChainHead.chain_id == chain_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def compare_and_swap_head(
    session: AsyncSession,
    *,
    chain_id: str,
    expected_hash: str,
    new_sequence_id: int,
    new_hash: str,
    new_occurred_at: datetime,
    now: datetime,
) -> bool:
    # Advance the persisted head only if nobody else moved it since we read it.
    result = await session.execute(
        update(AuditChainHead)
        .where(AuditChainHead.chain_id == chain_id, AuditChainHead.last_hash == expected_hash)
        .values(
            last_sequence_id=new_sequence_id,
            last_hash=new_hash,
            last_occurred_at=new_occurred_at,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def delete_prunable_records(
    session: AsyncSession,
    *,
    cutoff: datetime,
    record_ids: list[int],
) -> int:
    # Deletion is fenced on the compliance flag even when ids were preselected.
    if not record_ids:
        return 0
    result = await session.execute(
        delete(AuditRecord).where(
            AuditRecord.id.in_(record_ids),
            AuditRecord.compliance_event_flag.is_(False),
            AuditRecord.occurred_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def select_prunable(
    session: AsyncSession,
    *,
    cutoff: datetime,
    limit: int,
) -> list[tuple[int, str]]:
    # Oldest first; hashes are kept so survivors after a gap can be re-anchored.
    result = await session.execute(
        select(AuditRecord.id, AuditRecord.audit_hash)
        .where(AuditRecord.compliance_event_flag.is_(False), AuditRecord.occurred_at < cutoff)
        .order_by(AuditRecord.id.asc())
        .limit(limit)
    )
    return [(int(row.id), str(row.audit_hash)) for row in result.all()]


async def count_expired_compliance(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(AuditRecord)
        .where(AuditRecord.compliance_event_flag.is_(True), AuditRecord.occurred_at < cutoff)
    )
    return int(result.scalar() or 0)
