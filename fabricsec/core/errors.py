from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    TIMEOUT = "TIMEOUT"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    SECURITY_REJECTED = "SECURITY_REJECTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUDIT_WRITE_ERROR = "AUDIT_WRITE_ERROR"
    CANCELLED = "CANCELLED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class FabricSecError(Exception):
    """Base error for the security and audit core."""

    code: ErrorCode = ErrorCode.UNEXPECTED_ERROR

    def __init__(self, message: str, *, correlation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id


class ConflictError(FabricSecError):
    """An overlapping effective role assignment already exists."""


class NotFoundError(FabricSecError):
    """Referenced user, role, or record does not exist."""


class AuditWriteError(FabricSecError):
    """Audit append failed; the containing operation must be treated as not having happened."""

    code = ErrorCode.AUDIT_WRITE_ERROR


class ChainHeadConflictError(FabricSecError):
    """Persisted chain head moved between read and compare-and-swap."""


class QueryExecutionError(FabricSecError):
    """Classified, redacted failure from the read-only query path."""

    def __init__(self, code: ErrorCode, message: str, *, correlation_id: str | None = None) -> None:
        super().__init__(message, correlation_id=correlation_id)
        self.code = code


class InvalidRequestError(FabricSecError, ValueError):
    """Caller supplied an impossible request (e.g. an empty effective window)."""
