from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from fabricsec.apps.api.deps import Principal, get_gateway, get_principal
from fabricsec.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fabricsec.apps.api.response import SuccessEnvelope, request_correlation_id, success_response
from fabricsec.services.query.gateway import QueryExecutionGateway, QueryExecutionResult, QueryRequest, json_safe
from fabricsec.services.query.pool import ColumnMetadata
from fabricsec.services.query.validator import ParameterSpec, ParameterType


router = APIRouter(prefix="/queries", tags=["queries"], responses=DEFAULT_ERROR_RESPONSES)


class ParameterSpecPayload(BaseModel):
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = True
    min_value: float | None = None
    max_value: float | None = None
    max_length: int | None = Field(default=None, ge=1)
    pattern: str | None = None
    date_format: str = "%Y-%m-%d"
    allowed_values: list[Any] | None = None


class QueryPayload(BaseModel):
    sql: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    master_query_id: str | None = Field(default=None, max_length=100)
    resource: str | None = Field(default=None, max_length=200)
    role_context: str | None = Field(default=None, max_length=100)
    parameter_specs: list[ParameterSpecPayload] = Field(default_factory=list)
    max_rows: int | None = Field(default=None, ge=0)
    timeout_s: float | None = Field(default=None, gt=0)


class ValidationResponse(BaseModel):
    valid: bool
    error_code: str | None
    reasons: list[str]
    resources: list[str]


class ColumnResponse(BaseModel):
    name: str
    type_name: str
    nullable: bool | None
    precision: int | None
    scale: int | None


class ExecutionResponse(BaseModel):
    execution_id: str
    correlation_id: str
    status: str
    rows: list[dict[str, Any]]
    columns: list[ColumnResponse]
    row_count: int
    truncated: bool
    execution_time_ms: int
    error_code: str | None
    error_message: str | None
    reasons: list[str]
    pagination: dict[str, Any]
    warnings: list[str]
    result_hash: str
    audit_record_id: int | None


class EstimateResponse(BaseModel):
    estimated_rows: int | None


def _to_request(payload: QueryPayload, principal: Principal, request: Request) -> QueryRequest:
    # The caller's identity always comes from the principal, never the body.
    specs = tuple(
        ParameterSpec(
            name=spec.name,
            type=spec.type,
            required=spec.required,
            min_value=spec.min_value,
            max_value=spec.max_value,
            max_length=spec.max_length,
            pattern=spec.pattern,
            date_format=spec.date_format,
            allowed_values=tuple(spec.allowed_values) if spec.allowed_values is not None else None,
        )
        for spec in payload.parameter_specs
    )
    return QueryRequest(
        sql=payload.sql,
        user_id=principal.user_id,
        parameters=payload.parameters,
        master_query_id=payload.master_query_id,
        resource=payload.resource,
        role_context=payload.role_context,
        parameter_specs=specs,
        correlation_id=request_correlation_id(request),
        session_id=principal.session_id,
        ip_address=principal.ip_address,
        max_rows=payload.max_rows,
        timeout_s=payload.timeout_s,
    )


def _column(column: ColumnMetadata) -> ColumnResponse:
    return ColumnResponse(
        name=column.name,
        type_name=column.type_name,
        nullable=column.nullable,
        precision=column.precision,
        scale=column.scale,
    )


def _execution_response(result: QueryExecutionResult) -> ExecutionResponse:
    return ExecutionResponse(
        execution_id=result.execution_id,
        correlation_id=result.correlation_id,
        status=result.status.value,
        rows=json_safe(result.rows),
        columns=[_column(column) for column in result.columns],
        row_count=result.row_count,
        truncated=result.truncated,
        execution_time_ms=result.execution_time_ms,
        error_code=result.error_code.value if result.error_code else None,
        error_message=result.error_message,
        reasons=result.reasons,
        pagination=result.pagination,
        warnings=result.warnings,
        result_hash=result.result_hash,
        audit_record_id=result.audit_record_id,
    )


@router.post("/validate", response_model=SuccessEnvelope[ValidationResponse])
async def validate_query(
    request: Request,
    body: QueryPayload,
    principal: Principal = Depends(get_principal),
    gateway: QueryExecutionGateway = Depends(get_gateway),
) -> dict:
    result = await gateway.validate(_to_request(body, principal, request))
    payload = ValidationResponse(
        valid=result.valid,
        error_code=result.error_code.value if result.error_code else None,
        reasons=result.messages,
        resources=result.resources,
    )
    return success_response(request=request, data=payload)


@router.post("/execute", response_model=SuccessEnvelope[ExecutionResponse])
async def execute_query(
    request: Request,
    body: QueryPayload,
    principal: Principal = Depends(get_principal),
    gateway: QueryExecutionGateway = Depends(get_gateway),
) -> dict:
    # Rejections and failures are results, not HTTP errors; only audit failure raises.
    result = await gateway.execute(_to_request(body, principal, request))
    return success_response(request=request, data=_execution_response(result))


@router.post("/estimate", response_model=SuccessEnvelope[EstimateResponse])
async def estimate_query(
    request: Request,
    body: QueryPayload,
    principal: Principal = Depends(get_principal),
    gateway: QueryExecutionGateway = Depends(get_gateway),
) -> dict:
    estimated = await gateway.estimate_row_count(_to_request(body, principal, request))
    return success_response(request=request, data=EstimateResponse(estimated_rows=estimated))
