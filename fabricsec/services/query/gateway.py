"""Execution gateway for validated, parameterized read queries.

Every attempt leaves exactly one ``QueryExecutionRecord`` and one audit record
behind, committed together and sharing the request's correlation id. A
rejected attempt never reaches the read-only pool.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import hashlib
import json
import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fabricsec.core.clock import utcnow
from fabricsec.core.config import get_settings
from fabricsec.core.errors import ErrorCode
from fabricsec.core.logging import correlation_scope
from fabricsec.domain.models import QueryExecutionRecord
from fabricsec.domain.types import AuditEventType, ExecutionStatus, RiskLevel, Severity
from fabricsec.persistence.repos import queries as queries_repo
from fabricsec.services import telemetry
from fabricsec.services.audit import AuditChain, AuditEvent, get_audit_chain
from fabricsec.services.authz.resolver import PermissionGrant, resolve_permissions
from fabricsec.services.query.errors import describe_error
from fabricsec.services.query.pool import ColumnMetadata, QueryPool, get_readonly_pool
from fabricsec.services.query.validator import (
    ParameterSpec,
    QuerySecurityValidator,
    ValidationResult,
    ValidationRule,
    bind_parameter_names,
    get_query_validator,
)


logger = logging.getLogger(__name__)

ESTIMATE_TIMEOUT_MIN_S = 5.0
ESTIMATE_TIMEOUT_MAX_S = 15.0
CONNECTIVITY_TIMEOUT_S = 5.0
EMPTY_RESULT_HASH = "sha256:empty"


@dataclass(frozen=True)
class QueryRequest:
    sql: str
    user_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    master_query_id: str | None = None
    resource: str | None = None
    role_context: str | None = None
    parameter_specs: tuple[ParameterSpec, ...] = ()
    correlation_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    max_rows: int | None = None
    timeout_s: float | None = None


@dataclass(frozen=True)
class QueryExecutionResult:
    execution_id: str
    correlation_id: str
    status: ExecutionStatus
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[ColumnMetadata] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    execution_time_ms: int = 0
    error_code: ErrorCode | None = None
    error_message: str | None = None
    reasons: list[str] = field(default_factory=list)
    pagination: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    result_hash: str = EMPTY_RESULT_HASH
    audit_record_id: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


def json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def compute_result_hash(rows: list[dict[str, Any]]) -> str:
    # Fingerprint of exactly what was returned, for downstream reconciliation.
    if not rows:
        return EMPTY_RESULT_HASH
    canonical = json.dumps(json_safe(rows), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_pagination(*, returned_rows: int, max_rows: int, truncated: bool) -> dict[str, Any]:
    return {
        "returned_rows": returned_rows,
        "max_rows": max_rows,
        "has_more": truncated,
        "total_rows": "UNKNOWN" if truncated else returned_rows,
    }


def clamp_estimate_timeout(value: float) -> float:
    return min(ESTIMATE_TIMEOUT_MAX_S, max(ESTIMATE_TIMEOUT_MIN_S, float(value)))


@dataclass
class _Outcome:
    status: ExecutionStatus
    error_code: ErrorCode | None = None
    error_message: str | None = None
    row_count: int = 0
    truncated: bool = False
    reasons: list[str] = field(default_factory=list)


def _audit_shape(outcome: _Outcome, validation: ValidationResult) -> dict[str, Any]:
    # Severity, risk and flags for the audit record of one attempt.
    if outcome.status == ExecutionStatus.SECURITY_REJECTED:
        injection = validation.has_rule(ValidationRule.INJECTION)
        return {
            "event_type": AuditEventType.QUERY_REJECTED.value,
            "severity": Severity.WARN.value,
            "risk_level": RiskLevel.HIGH.value if injection else RiskLevel.MEDIUM.value,
            "security_event": True,
        }
    if outcome.status == ExecutionStatus.SUCCESS:
        return {
            "event_type": AuditEventType.QUERY_EXECUTION.value,
            "severity": Severity.INFO.value,
            "risk_level": RiskLevel.LOW.value,
            "security_event": False,
        }
    denied = outcome.error_code == ErrorCode.ACCESS_DENIED
    return {
        "event_type": AuditEventType.QUERY_EXECUTION.value,
        "severity": Severity.WARN.value if outcome.status == ExecutionStatus.CANCELLED else Severity.ERROR.value,
        "risk_level": RiskLevel.MEDIUM.value if denied else RiskLevel.LOW.value,
        "security_event": denied,
    }


class QueryExecutionGateway:
    def __init__(
        self,
        *,
        pool: QueryPool | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        chain: AuditChain | None = None,
        validator: QuerySecurityValidator | None = None,
        max_rows: int | None = None,
        timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._pool = pool
        self._session_factory = session_factory
        self._chain = chain
        self._validator = validator
        self._max_rows = max_rows if max_rows is not None else settings.query_max_rows
        self._timeout_s = timeout_s if timeout_s is not None else settings.query_timeout_s
        self._estimate_timeout_s = clamp_estimate_timeout(settings.query_estimate_timeout_s)
        self._metadata_timeout_s = settings.query_metadata_timeout_s

    @property
    def pool(self) -> QueryPool:
        # Resolved lazily so constructing a gateway never opens connections.
        if self._pool is None:
            self._pool = get_readonly_pool()
        return self._pool

    @property
    def chain(self) -> AuditChain:
        return self._chain or get_audit_chain()

    @property
    def validator(self) -> QuerySecurityValidator:
        return self._validator or get_query_validator()

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from fabricsec.persistence.db import SessionLocal

            return SessionLocal
        return self._session_factory

    async def _permissions_for(
        self, request: QueryRequest, permissions: frozenset[PermissionGrant] | None
    ) -> frozenset[PermissionGrant]:
        if permissions is not None:
            return permissions
        async with self._sessions()() as session:
            return await resolve_permissions(session, user_id=request.user_id)

    def _validate(
        self, request: QueryRequest, permissions: frozenset[PermissionGrant]
    ) -> ValidationResult:
        return self.validator.validate(
            request.sql,
            request.parameters,
            permissions,
            resource=request.resource,
            parameter_specs=request.parameter_specs,
        )

    async def validate(
        self,
        request: QueryRequest,
        *,
        permissions: frozenset[PermissionGrant] | None = None,
    ) -> ValidationResult:
        # Dry run; nothing is executed or persisted.
        with correlation_scope(request.correlation_id):
            return self._validate(request, await self._permissions_for(request, permissions))

    async def _record_attempt(
        self,
        *,
        request: QueryRequest,
        execution_id: str,
        correlation_id: str,
        validation: ValidationResult,
        outcome: _Outcome,
        started_at: datetime,
        execution_time_ms: int,
    ) -> int:
        # Execution record and audit record commit in one transaction.
        completed_at = utcnow()
        shape = _audit_shape(outcome, validation)
        parameters = json_safe(validation.bound_parameters or request.parameters)
        async with self._sessions()() as session:
            session.add(
                QueryExecutionRecord(
                    id=execution_id,
                    master_query_id=request.master_query_id,
                    resolved_sql=validation.sql or request.sql,
                    parameters_json=parameters,
                    user_id=request.user_id,
                    role_context=request.role_context,
                    correlation_id=correlation_id,
                    status=outcome.status.value,
                    row_count=outcome.row_count,
                    truncated=outcome.truncated,
                    execution_time_ms=execution_time_ms,
                    error_code=outcome.error_code.value if outcome.error_code else None,
                    error_message=outcome.error_message,
                    started_at=started_at,
                    completed_at=completed_at,
                )
            )
            record = await self.chain.append(
                session,
                AuditEvent(
                    event_type=shape["event_type"],
                    event_subtype=request.master_query_id or "AD_HOC",
                    severity=shape["severity"],
                    user_id=request.user_id,
                    session_id=request.session_id,
                    ip_address=request.ip_address,
                    payload={
                        "execution_id": execution_id,
                        "master_query_id": request.master_query_id,
                        "status": outcome.status.value,
                        "error_code": outcome.error_code.value if outcome.error_code else None,
                        "error_message": outcome.error_message,
                        "resources": validation.resources,
                        "parameter_names": sorted(request.parameters),
                        "role_context": request.role_context,
                        "row_count": outcome.row_count,
                        "truncated": outcome.truncated,
                        "execution_time_ms": execution_time_ms,
                        "reasons": outcome.reasons,
                    },
                    security_event=shape["security_event"],
                    # Access to regulated source data is always a compliance fact.
                    compliance_event=True,
                    risk_level=shape["risk_level"],
                    correlation_id=correlation_id,
                ),
            )
        telemetry.record_query_execution(
            status=outcome.status.value,
            error_code=outcome.error_code.value if outcome.error_code else None,
            latency_ms=float(execution_time_ms),
            row_count=outcome.row_count,
            truncated=outcome.truncated,
        )
        return record.id

    async def execute(
        self,
        request: QueryRequest,
        *,
        permissions: frozenset[PermissionGrant] | None = None,
    ) -> QueryExecutionResult:
        """Validate, run under limits, and audit one query attempt.

        Raises ``AuditWriteError`` when the attempt cannot be recorded; the
        result is then withheld because an unaudited execution did not happen.
        Cancellation is recorded as CANCELLED and then re-raised.
        """
        with correlation_scope(request.correlation_id) as correlation_id:
            execution_id = uuid4().hex
            started_at = utcnow()
            started = time.monotonic()
            granted = await self._permissions_for(request, permissions)
            validation = self._validate(request, granted)

            if not validation.valid:
                outcome = _Outcome(
                    status=ExecutionStatus.SECURITY_REJECTED,
                    error_code=validation.error_code,
                    error_message="Query rejected by security validation",
                    reasons=validation.messages,
                )
                elapsed_ms = int((time.monotonic() - started) * 1000)
                audit_id = await self._record_attempt(
                    request=request,
                    execution_id=execution_id,
                    correlation_id=correlation_id,
                    validation=validation,
                    outcome=outcome,
                    started_at=started_at,
                    execution_time_ms=elapsed_ms,
                )
                logger.warning(
                    "query_rejected execution_id=%s user_id=%s error_code=%s",
                    execution_id,
                    request.user_id,
                    outcome.error_code.value if outcome.error_code else None,
                )
                return QueryExecutionResult(
                    execution_id=execution_id,
                    correlation_id=correlation_id,
                    status=outcome.status,
                    execution_time_ms=elapsed_ms,
                    error_code=outcome.error_code,
                    error_message=outcome.error_message,
                    reasons=outcome.reasons,
                    audit_record_id=audit_id,
                )

            max_rows = max(0, min(request.max_rows or self._max_rows, self._max_rows))
            timeout_s = min(request.timeout_s or self._timeout_s, self._timeout_s)
            referenced = set(bind_parameter_names(validation.sql))
            params = {name: value for name, value in validation.bound_parameters.items() if name in referenced}

            try:
                # Outer ceiling covers pool acquisition as well as the statement.
                fetched = await asyncio.wait_for(
                    self.pool.fetch(validation.sql, params, max_rows=max_rows, timeout_s=timeout_s),
                    timeout=timeout_s,
                )
            except asyncio.CancelledError:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                outcome = _Outcome(
                    status=ExecutionStatus.CANCELLED,
                    error_code=ErrorCode.CANCELLED,
                    error_message="Query was cancelled by the caller",
                )
                logger.warning("query_cancelled execution_id=%s user_id=%s", execution_id, request.user_id)
                # Shielded so a second cancel cannot leave the attempt unaudited.
                await asyncio.shield(
                    self._record_attempt(
                        request=request,
                        execution_id=execution_id,
                        correlation_id=correlation_id,
                        validation=validation,
                        outcome=outcome,
                        started_at=started_at,
                        execution_time_ms=elapsed_ms,
                    )
                )
                raise
            except Exception as exc:
                # Every failure is classified and audited, never surfaced raw.
                elapsed_ms = int((time.monotonic() - started) * 1000)
                code, message = describe_error(exc)
                outcome = _Outcome(status=ExecutionStatus.FAILED, error_code=code, error_message=message)
                logger.error(
                    "query_failed execution_id=%s user_id=%s error_code=%s elapsed_ms=%s",
                    execution_id,
                    request.user_id,
                    code.value,
                    elapsed_ms,
                )
                audit_id = await self._record_attempt(
                    request=request,
                    execution_id=execution_id,
                    correlation_id=correlation_id,
                    validation=validation,
                    outcome=outcome,
                    started_at=started_at,
                    execution_time_ms=elapsed_ms,
                )
                return QueryExecutionResult(
                    execution_id=execution_id,
                    correlation_id=correlation_id,
                    status=outcome.status,
                    execution_time_ms=elapsed_ms,
                    error_code=code,
                    error_message=message,
                    audit_record_id=audit_id,
                )

            elapsed_ms = int((time.monotonic() - started) * 1000)
            row_count = len(fetched.rows)
            outcome = _Outcome(
                status=ExecutionStatus.SUCCESS,
                row_count=row_count,
                truncated=fetched.truncated,
            )
            audit_id = await self._record_attempt(
                request=request,
                execution_id=execution_id,
                correlation_id=correlation_id,
                validation=validation,
                outcome=outcome,
                started_at=started_at,
                execution_time_ms=elapsed_ms,
            )
            warnings: list[str] = []
            if fetched.truncated:
                warnings.append(
                    f"Result limited to {max_rows} rows; more rows are available. Refine the query filters."
                )
            logger.info(
                "query_executed execution_id=%s user_id=%s rows=%s truncated=%s elapsed_ms=%s",
                execution_id,
                request.user_id,
                row_count,
                fetched.truncated,
                elapsed_ms,
            )
            return QueryExecutionResult(
                execution_id=execution_id,
                correlation_id=correlation_id,
                status=ExecutionStatus.SUCCESS,
                rows=fetched.rows,
                columns=fetched.columns,
                row_count=row_count,
                truncated=fetched.truncated,
                execution_time_ms=elapsed_ms,
                pagination=build_pagination(
                    returned_rows=row_count, max_rows=max_rows, truncated=fetched.truncated
                ),
                warnings=warnings,
                result_hash=compute_result_hash(fetched.rows),
                audit_record_id=audit_id,
            )

    async def _audit_rejection(
        self, request: QueryRequest, validation: ValidationResult, *, operation: str, correlation_id: str
    ) -> None:
        # Rejected estimate/describe calls are audited without an execution record.
        await self.chain.append_standalone(
            AuditEvent(
                event_type=AuditEventType.QUERY_REJECTED.value,
                event_subtype=operation,
                severity=Severity.WARN.value,
                user_id=request.user_id,
                session_id=request.session_id,
                ip_address=request.ip_address,
                payload={
                    "master_query_id": request.master_query_id,
                    "resources": validation.resources,
                    "reasons": validation.messages,
                },
                security_event=True,
                risk_level=RiskLevel.MEDIUM.value,
                correlation_id=correlation_id,
            )
        )

    async def estimate_row_count(
        self,
        request: QueryRequest,
        *,
        permissions: frozenset[PermissionGrant] | None = None,
    ) -> int | None:
        # Convenience only: any failure yields None rather than an error.
        with correlation_scope(request.correlation_id) as correlation_id:
            validation = self._validate(request, await self._permissions_for(request, permissions))
            if not validation.valid:
                await self._audit_rejection(
                    request, validation, operation="ESTIMATE", correlation_id=correlation_id
                )
                return None
            referenced = set(bind_parameter_names(validation.sql))
            params = {name: value for name, value in validation.bound_parameters.items() if name in referenced}
            count_sql = f"SELECT COUNT(*) FROM ({validation.sql}) AS _count"
            try:
                value = await asyncio.wait_for(
                    self.pool.fetch_scalar(count_sql, params, timeout_s=self._estimate_timeout_s),
                    timeout=self._estimate_timeout_s,
                )
            except (asyncio.TimeoutError, TimeoutError, SQLAlchemyError, OSError) as exc:
                code, _message = describe_error(exc)
                logger.info("query_estimate_unavailable user_id=%s error_code=%s", request.user_id, code.value)
                return None
            return int(value) if value is not None else None

    async def describe_columns(
        self,
        request: QueryRequest,
        *,
        permissions: frozenset[PermissionGrant] | None = None,
    ) -> list[ColumnMetadata] | None:
        with correlation_scope(request.correlation_id) as correlation_id:
            validation = self._validate(request, await self._permissions_for(request, permissions))
            if not validation.valid:
                await self._audit_rejection(
                    request, validation, operation="DESCRIBE", correlation_id=correlation_id
                )
                return None
            referenced = set(bind_parameter_names(validation.sql))
            params = {name: value for name, value in validation.bound_parameters.items() if name in referenced}
            fetched = await asyncio.wait_for(
                self.pool.fetch(validation.sql, params, max_rows=0, timeout_s=self._metadata_timeout_s),
                timeout=self._metadata_timeout_s,
            )
            return fetched.columns

    async def check_connectivity(self) -> dict[str, Any]:
        started = time.monotonic()
        healthy = True
        error_code: str | None = None
        try:
            await asyncio.wait_for(self.pool.ping(timeout_s=CONNECTIVITY_TIMEOUT_S), timeout=CONNECTIVITY_TIMEOUT_S)
        except (asyncio.TimeoutError, TimeoutError, SQLAlchemyError, OSError) as exc:
            healthy = False
            error_code = describe_error(exc)[0].value
            logger.warning("readonly_pool_unhealthy error_code=%s", error_code)
        return {
            "healthy": healthy,
            "response_time_ms": int((time.monotonic() - started) * 1000),
            "error_code": error_code,
            "pool": self.pool.stats(),
        }


async def list_executions(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    correlation_id: str | None = None,
    limit: int = 50,
) -> list[QueryExecutionRecord]:
    return await queries_repo.list_executions(
        session, user_id=user_id, correlation_id=correlation_id, limit=limit
    )


_default_gateway: QueryExecutionGateway | None = None


def get_query_gateway() -> QueryExecutionGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = QueryExecutionGateway()
    return _default_gateway
