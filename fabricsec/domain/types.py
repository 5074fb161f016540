from __future__ import annotations

from enum import Enum


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    LOCKED = "LOCKED"
    PENDING = "PENDING"


class PermissionAction(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXECUTE = "EXECUTE"
    ALL = "ALL"


class Severity(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SECURITY_REJECTED = "SECURITY_REJECTED"
    CANCELLED = "CANCELLED"


class AuditEventType(str, Enum):
    ROLE_ASSIGNMENT = "ROLE_ASSIGNMENT"
    ROLE_REVOCATION = "ROLE_REVOCATION"
    QUERY_EXECUTION = "QUERY_EXECUTION"
    QUERY_REJECTED = "QUERY_REJECTED"
    AUTH = "AUTH"
    USER_LIFECYCLE = "USER_LIFECYCLE"
    CONFIGURATION_CHANGE = "CONFIGURATION_CHANGE"
    ESCALATION = "ESCALATION"
    AUDIT_RETENTION = "AUDIT_RETENTION"


# Roles are ranked 1 (most privileged) to 5.
ROLE_LEVEL_MIN = 1
ROLE_LEVEL_MAX = 5
