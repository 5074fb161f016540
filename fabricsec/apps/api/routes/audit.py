from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.apps.api.deps import AUDIT_VIEW_PERMISSION, Principal, get_chain, get_db, require_permission
from fabricsec.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fabricsec.apps.api.response import SuccessEnvelope, success_response
from fabricsec.domain.models import AuditRecord
from fabricsec.persistence.repos import audit as audit_repo
from fabricsec.services.audit import AuditChain


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditRecordResponse(BaseModel):
    id: int
    occurred_at: str
    event_type: str
    event_subtype: str | None
    severity: str
    user_id: str | None
    session_id: str | None
    ip_address: str | None
    correlation_id: str | None
    security_event: bool
    compliance_event: bool
    risk_level: str
    payload: dict[str, Any] | None
    audit_hash: str
    previous_audit_hash: str


class AuditRecordsPage(BaseModel):
    items: list[AuditRecordResponse]
    next_offset: int | None


class ChainVerificationResponse(BaseModel):
    valid: bool
    broken_at: list[int]
    checked: int


class EscalateRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def _to_response(record: AuditRecord) -> AuditRecordResponse:
    # Serialize audit record datetimes to ISO 8601 for API clients.
    return AuditRecordResponse(
        id=record.id,
        occurred_at=record.occurred_at.isoformat(),
        event_type=record.event_type,
        event_subtype=record.event_subtype,
        severity=record.severity,
        user_id=record.user_id,
        session_id=record.session_id,
        ip_address=record.ip_address,
        correlation_id=record.correlation_id,
        security_event=record.security_event_flag,
        compliance_event=record.compliance_event_flag,
        risk_level=record.risk_level,
        payload=record.payload_json,
        audit_hash=record.audit_hash,
        previous_audit_hash=record.previous_audit_hash,
    )


@router.get("/records", response_model=SuccessEnvelope[AuditRecordsPage])
async def list_audit_records(
    request: Request,
    event_type: str | None = None,
    correlation_id: str | None = None,
    user_id: str | None = None,
    security_only: bool = False,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    _principal: Principal = Depends(require_permission(AUDIT_VIEW_PERMISSION)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        # Fetch one extra row to decide whether a next page exists.
        records = await audit_repo.list_records(
            db,
            event_type=event_type,
            correlation_id=correlation_id,
            user_id=user_id,
            security_only=security_only,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing audit records") from exc
    has_more = len(records) > limit
    payload = AuditRecordsPage(
        items=[_to_response(record) for record in records[:limit]],
        next_offset=offset + limit if has_more else None,
    )
    return success_response(request=request, data=payload)


@router.get("/verify", response_model=SuccessEnvelope[ChainVerificationResponse])
async def verify_audit_chain(
    request: Request,
    since: datetime | None = Query(default=None),
    _principal: Principal = Depends(require_permission(AUDIT_VIEW_PERMISSION)),
    db: AsyncSession = Depends(get_db),
    chain: AuditChain = Depends(get_chain),
) -> dict:
    result = await chain.verify_chain(db, since=since)
    payload = ChainVerificationResponse(valid=result.valid, broken_at=result.broken_at, checked=result.checked)
    return success_response(request=request, data=payload)


@router.post(
    "/records/{record_id}/escalate",
    status_code=201,
    response_model=SuccessEnvelope[AuditRecordResponse],
)
async def escalate_audit_record(
    request: Request,
    record_id: int,
    body: EscalateRequest | None = None,
    principal: Principal = Depends(require_permission(AUDIT_VIEW_PERMISSION)),
    db: AsyncSession = Depends(get_db),
    chain: AuditChain = Depends(get_chain),
) -> dict:
    record = await audit_repo.get_record(db, record_id=record_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"Audit record not found: {record_id}"},
        )
    escalation = await chain.escalate(
        db,
        record,
        escalated_by=principal.user_id,
        reason=body.reason if body else None,
    )
    return success_response(request=request, data=_to_response(escalation))
