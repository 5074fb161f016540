from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.core.clock import ensure_utc, utcnow
from fabricsec.core.config import get_settings
from fabricsec.domain.types import AuditEventType, RiskLevel, Severity
from fabricsec.persistence.repos import audit as audit_repo
from fabricsec.services.audit import AuditChain, AuditEvent, get_audit_chain


logger = logging.getLogger(__name__)

PRUNE_BATCH_SIZE = 1000


@dataclass(frozen=True)
class PruneResult:
    deleted: int
    batches: int
    cutoff: datetime
    audit_record_ids: list[int]


def retention_cutoff(*, now: datetime | None = None, days: int | None = None) -> datetime:
    settings = get_settings()
    return (now or utcnow()) - timedelta(days=days if days is not None else settings.audit_retention_days)


def compliance_cutoff(*, now: datetime | None = None, years: int | None = None) -> datetime:
    settings = get_settings()
    span = years if years is not None else settings.audit_compliance_retention_years
    # Calendar-agnostic: a regulatory year is counted as 365 days plus leap slack.
    return (now or utcnow()) - timedelta(days=int(span * 365.25))


async def prune_audit_records(
    session: AsyncSession,
    *,
    cutoff: datetime | None = None,
    batch_size: int = PRUNE_BATCH_SIZE,
    requested_by: str = "SYSTEM",
    chain: AuditChain | None = None,
) -> PruneResult:
    """Delete aged audit records that carry no compliance flag.

    Each batch commits together with an AUDIT_RETENTION record listing the
    hashes that survivors still point at, so verification can tell a
    retention gap from tampering.
    """
    chain = chain or get_audit_chain()
    cutoff = ensure_utc(cutoff) if cutoff is not None else retention_cutoff()
    deleted_total = 0
    batches = 0
    audit_ids: list[int] = []
    while True:
        candidates = await audit_repo.select_prunable(session, cutoff=cutoff, limit=batch_size)
        if not candidates:
            break
        ids = [record_id for record_id, _hash in candidates]
        deleted = await audit_repo.delete_prunable_records(session, cutoff=cutoff, record_ids=ids)
        # A gap ends where the next sequence id was not deleted in this batch.
        id_set = set(ids)
        tail_hashes = [audit_hash for record_id, audit_hash in candidates if record_id + 1 not in id_set]
        record = await chain.append(
            session,
            AuditEvent(
                event_type=AuditEventType.AUDIT_RETENTION.value,
                event_subtype="PRUNE",
                severity=Severity.INFO.value,
                user_id=requested_by,
                payload={
                    "cutoff": cutoff.isoformat(),
                    "deleted": deleted,
                    "first_id": ids[0],
                    "last_id": ids[-1],
                    "pruned_tail_hashes": tail_hashes,
                },
                # Must outlive every record it vouches for.
                compliance_event=True,
                risk_level=RiskLevel.LOW.value,
            ),
        )
        audit_ids.append(record.id)
        deleted_total += deleted
        batches += 1
        logger.info(
            "audit_prune_batch deleted=%s first_id=%s last_id=%s audit_id=%s",
            deleted,
            ids[0],
            ids[-1],
            record.id,
        )
        if len(candidates) < batch_size:
            break
    logger.info("audit_prune_complete deleted=%s batches=%s cutoff=%s", deleted_total, batches, cutoff.isoformat())
    return PruneResult(deleted=deleted_total, batches=batches, cutoff=cutoff, audit_record_ids=audit_ids)


async def count_expired_compliance_records(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    years: int | None = None,
) -> int:
    # Reported for manual review; compliance records are never pruned automatically.
    cutoff = compliance_cutoff(now=now, years=years)
    count = await audit_repo.count_expired_compliance(session, cutoff=cutoff)
    if count:
        logger.warning("audit_compliance_records_expired count=%s cutoff=%s", count, cutoff.isoformat())
    return count
