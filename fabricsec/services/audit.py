"""Tamper-evident audit chain.

Every record stores the digest of its predecessor, so a retroactive edit to
record K invalidates K's stored hash (or, if the attacker also rewrites the
hash, K+1's back-link). Appends are serialized twice over: an in-process
``asyncio.Lock`` orders writers inside one process, and a compare-and-swap on
the persisted chain head rejects writers from other processes that raced us.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
import hashlib
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fabricsec.core.clock import canonical_timestamp, ensure_utc, utcnow
from fabricsec.core.config import get_settings
from fabricsec.core.errors import AuditWriteError, ChainHeadConflictError
from fabricsec.core.logging import get_correlation_id
from fabricsec.domain.models import AuditChainHead, AuditRecord
from fabricsec.domain.types import AuditEventType, RiskLevel, Severity
from fabricsec.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("fabricsec.audit")

GENESIS_HASH = "0" * 64

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

# Stable field order for the canonical serialization; audit_hash itself is excluded.
CANONICAL_FIELDS: tuple[str, ...] = (
    "id",
    "occurred_at",
    "event_type",
    "event_subtype",
    "severity",
    "user_id",
    "session_id",
    "ip_address",
    "correlation_id",
    "security_event_flag",
    "compliance_event_flag",
    "risk_level",
    "digital_signature",
    "payload_json",
)

_SIGNATURE_EVENT_TYPES = {
    AuditEventType.CONFIGURATION_CHANGE.value,
    AuditEventType.ROLE_ASSIGNMENT.value,
}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def normalize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    # Round-trip through JSON so what we hash is exactly what the JSON column returns.
    sanitized = sanitize_metadata(payload or {})
    return json.loads(json.dumps(sanitized, default=str, ensure_ascii=False))


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    severity: str = Severity.INFO.value
    event_subtype: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    security_event: bool = False
    compliance_event: bool = False
    risk_level: str = RiskLevel.LOW.value
    correlation_id: str | None = None
    digital_signature: str | None = None


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    broken_at: list[int]
    checked: int


def _canonical_value(name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return canonical_timestamp(value)
    if name in {"security_event_flag", "compliance_event_flag"}:
        return bool(value)
    return value


def canonical_serialization(record: AuditRecord) -> str:
    pairs = [[name, _canonical_value(name, getattr(record, name))] for name in CANONICAL_FIELDS]
    return json.dumps(pairs, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_audit_hash(record: AuditRecord, *, algorithm: str = "sha256") -> str:
    digest = hashlib.new(algorithm)
    digest.update(canonical_serialization(record).encode("utf-8"))
    digest.update(record.previous_audit_hash.encode("utf-8"))
    return digest.hexdigest()


def is_security_event(record: AuditRecord) -> bool:
    return bool(record.security_event_flag)


def is_compliance_event(record: AuditRecord) -> bool:
    return bool(record.compliance_event_flag)


def is_critical(record: AuditRecord) -> bool:
    return record.severity == Severity.CRITICAL.value or record.risk_level == RiskLevel.CRITICAL.value


def requires_digital_signature(record: AuditRecord) -> bool:
    return is_critical(record) or record.event_type in _SIGNATURE_EVENT_TYPES


class AuditChain:
    def __init__(
        self,
        *,
        chain_id: str | None = None,
        algorithm: str | None = None,
        page_size: int | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        max_conflict_retries: int = 3,
    ) -> None:
        settings = get_settings()
        self._chain_id = chain_id or settings.audit_chain_id
        self._algorithm = algorithm or settings.audit_hash_algorithm
        self._page_size = page_size or settings.audit_verify_page_size
        self._session_factory = session_factory
        self._max_conflict_retries = max(1, max_conflict_retries)
        # The single serialization point for appends within this process.
        self._lock = asyncio.Lock()
        self._last_hash: str | None = None

    @property
    def chain_id(self) -> str:
        return self._chain_id

    @property
    def last_hash(self) -> str | None:
        return self._last_hash

    def hash_record(self, record: AuditRecord) -> str:
        return compute_audit_hash(record, algorithm=self._algorithm)

    async def _load_head(self, session: AsyncSession) -> AuditChainHead:
        head = await audit_repo.get_chain_head(session, chain_id=self._chain_id)
        if head is not None:
            return head
        # Recover after a restart or first boot from the highest persisted sequence.
        latest = await audit_repo.get_latest_record(session)
        now = utcnow()
        head = AuditChainHead(
            chain_id=self._chain_id,
            last_sequence_id=latest.id if latest else 0,
            last_hash=latest.audit_hash if latest else GENESIS_HASH,
            last_occurred_at=latest.occurred_at if latest else now,
            updated_at=now,
        )
        session.add(head)
        await session.flush()
        logger.info(
            "audit_chain_head_recovered chain_id=%s last_sequence_id=%s",
            self._chain_id,
            head.last_sequence_id,
        )
        return head

    async def _stage(self, session: AsyncSession, event: AuditEvent) -> AuditRecord:
        head = await self._load_head(session)
        expected_hash = head.last_hash
        now = utcnow()
        occurred_at = max(now, ensure_utc(head.last_occurred_at))
        record = AuditRecord(
            id=int(head.last_sequence_id) + 1,
            event_type=event.event_type,
            event_subtype=event.event_subtype,
            severity=event.severity,
            user_id=event.user_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            occurred_at=occurred_at,
            payload_json=normalize_payload(event.payload),
            security_event_flag=event.security_event,
            compliance_event_flag=event.compliance_event,
            risk_level=event.risk_level,
            correlation_id=event.correlation_id or get_correlation_id(),
            previous_audit_hash=expected_hash,
            digital_signature=event.digital_signature,
        )
        record.audit_hash = self.hash_record(record)
        session.add(record)
        try:
            await session.flush()
        except IntegrityError as exc:
            # Another process already claimed this sequence id.
            raise ChainHeadConflictError(
                f"Audit sequence {record.id} already taken chain_id={self._chain_id}",
                correlation_id=record.correlation_id,
            ) from exc
        swapped = await audit_repo.compare_and_swap_head(
            session,
            chain_id=self._chain_id,
            expected_hash=expected_hash,
            new_sequence_id=record.id,
            new_hash=record.audit_hash,
            new_occurred_at=occurred_at,
            now=now,
        )
        if not swapped:
            raise ChainHeadConflictError(
                f"Audit chain head moved during append chain_id={self._chain_id}",
                correlation_id=record.correlation_id,
            )
        return record

    async def append(self, session: AsyncSession, event: AuditEvent) -> AuditRecord:
        """Append one record and commit the session.

        Anything the caller staged on ``session`` commits atomically with the
        record, so a state change is never persisted without its audit entry.
        Any failure rolls the whole session back and raises ``AuditWriteError``.
        """
        async with self._lock:
            try:
                record = await self._stage(session, event)
                await session.commit()
            except (SQLAlchemyError, ChainHeadConflictError) as exc:
                await session.rollback()
                logger.error(
                    "audit_append_failed chain_id=%s event_type=%s",
                    self._chain_id,
                    event.event_type,
                    exc_info=exc,
                )
                raise AuditWriteError(
                    "Audit record could not be written",
                    correlation_id=event.correlation_id or get_correlation_id(),
                ) from exc
            self._last_hash = record.audit_hash
        audit_logger.info(
            "audit_record_appended id=%s event_type=%s subtype=%s severity=%s risk=%s security=%s compliance=%s",
            record.id,
            record.event_type,
            record.event_subtype,
            record.severity,
            record.risk_level,
            record.security_event_flag,
            record.compliance_event_flag,
        )
        return record

    async def append_standalone(self, event: AuditEvent) -> AuditRecord:
        # Own session; a head conflict carries no caller state so it is safe to retry.
        if self._session_factory is None:
            from fabricsec.persistence.db import SessionLocal

            factory = SessionLocal
        else:
            factory = self._session_factory
        last_error: AuditWriteError | None = None
        for _attempt in range(self._max_conflict_retries):
            async with factory() as session:
                try:
                    return await self.append(session, event)
                except AuditWriteError as exc:
                    if not isinstance(exc.__cause__, ChainHeadConflictError):
                        raise
                    last_error = exc
        assert last_error is not None
        raise last_error

    async def _is_pruned_tail(self, session: AsyncSession, audit_hash: str) -> bool:
        # Only consulted on a link mismatch; retention records are paged, never loaded whole.
        after_id = 0
        while True:
            page = await audit_repo.fetch_retention_payloads(
                session,
                event_type=AuditEventType.AUDIT_RETENTION.value,
                after_id=after_id,
                limit=self._page_size,
            )
            if not page:
                return False
            for _record_id, payload in page:
                if audit_hash in {str(value) for value in payload.get("pruned_tail_hashes", [])}:
                    return True
            after_id = page[-1][0]

    async def verify_chain(
        self,
        session: AsyncSession,
        *,
        since: datetime | None = None,
    ) -> ChainVerification:
        # Streaming O(n) walk in timestamp order, one page in memory at a time.
        since_utc = ensure_utc(since) if since is not None else None
        expected_previous = GENESIS_HASH
        if since_utc is not None:
            predecessor = await audit_repo.get_record_before(session, occurred_at=since_utc)
            if predecessor is not None:
                expected_previous = predecessor.audit_hash
                session.expunge(predecessor)

        broken: list[int] = []
        checked = 0
        after: tuple[datetime, int] | None = None
        while True:
            page = await audit_repo.fetch_chain_page(
                session, after=after, since=since_utc, limit=self._page_size
            )
            if not page:
                break
            for record in page:
                hash_ok = self.hash_record(record) == record.audit_hash
                link_ok = record.previous_audit_hash == expected_previous
                if not link_ok and record.previous_audit_hash:
                    link_ok = await self._is_pruned_tail(session, record.previous_audit_hash)
                if not (hash_ok and link_ok):
                    broken.append(record.id)
                    logger.warning(
                        "audit_chain_break id=%s hash_ok=%s link_ok=%s",
                        record.id,
                        hash_ok,
                        link_ok,
                    )
                expected_previous = record.audit_hash
                checked += 1
            after = (page[-1].occurred_at, page[-1].id)
            for record in page:
                session.expunge(record)

        logger.info(
            "audit_chain_verified chain_id=%s checked=%s broken=%s",
            self._chain_id,
            checked,
            len(broken),
        )
        return ChainVerification(valid=not broken, broken_at=broken, checked=checked)

    async def escalate(
        self,
        session: AsyncSession,
        record: AuditRecord,
        *,
        escalated_by: str | None = None,
        reason: str | None = None,
    ) -> AuditRecord:
        # Escalation is a new fact about an old record; history is never edited.
        correlation_id = record.correlation_id or f"audit_{record.id}"
        event = AuditEvent(
            event_type=AuditEventType.ESCALATION.value,
            event_subtype=record.event_type,
            severity=record.severity,
            user_id=escalated_by,
            payload={
                "escalated_record_id": record.id,
                "escalated_record_hash": record.audit_hash,
                "original_risk_level": record.risk_level,
                "reason": reason,
            },
            security_event=True,
            compliance_event=True,
            risk_level=RiskLevel.HIGH.value,
            correlation_id=correlation_id,
        )
        return await self.append(session, event)


@lru_cache
def get_audit_chain() -> AuditChain:
    return AuditChain()
