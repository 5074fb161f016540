from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
SequenceType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "fabric_users"
    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'LOCKED', 'PENDING')",
            name="ck_fabric_users_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Users are never hard-deleted; status transitions carry the lifecycle.
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    account_locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(50), default="SYSTEM", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Role(Base):
    __tablename__ = "fabric_roles"
    __table_args__ = (
        CheckConstraint("role_level BETWEEN 1 AND 5", name="ck_fabric_roles_level"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    level: Mapped[int] = mapped_column("role_level", Integer, nullable=False)
    # Documentary hierarchy only; grants are never inherited through it.
    parent_role_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("fabric_roles.id"), nullable=True
    )
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str] = mapped_column(String(50), default="SYSTEM", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Permission(Base):
    __tablename__ = "fabric_permissions"
    __table_args__ = (
        Index("ix_fabric_permissions_resource", "resource_type", "action"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_pattern: Mapped[str] = mapped_column(String(200), default="*", nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RolePermission(Base):
    __tablename__ = "fabric_role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_fabric_role_permissions"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    role_id: Mapped[str] = mapped_column(String(50), ForeignKey("fabric_roles.id"), index=True)
    permission_id: Mapped[str] = mapped_column(String(50), ForeignKey("fabric_permissions.id"))
    granted_by: Mapped[str] = mapped_column(String(50), default="SYSTEM", nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRoleAssignment(Base):
    __tablename__ = "fabric_user_roles"
    __table_args__ = (
        Index("ix_fabric_user_roles_user", "user_id"),
        Index("ix_fabric_user_roles_active", "is_active", "effective_from", "effective_until"),
        UniqueConstraint("user_id", "role_id", "effective_from", name="uq_fabric_user_roles_window"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(50), ForeignKey("fabric_users.id"), nullable=False)
    role_id: Mapped[str] = mapped_column(String(50), ForeignKey("fabric_roles.id"), nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(50), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Null means open-ended.
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)


class AuditRecord(Base):
    __tablename__ = "fabric_audit_records"
    __table_args__ = (
        Index("ix_fabric_audit_records_occurred_at", "occurred_at", "id"),
        Index("ix_fabric_audit_records_correlation", "correlation_id"),
        Index("ix_fabric_audit_records_event_type", "event_type"),
        Index("ix_fabric_audit_records_retention", "compliance_event_flag", "occurred_at"),
    )

    # Assigned from the chain head, not by the database, so it is part of the hash.
    id: Mapped[int] = mapped_column(SequenceType, primary_key=True, autoincrement=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_subtype: Mapped[str | None] = mapped_column(String(50), nullable=True)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    security_event_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    compliance_event_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), default="LOW", nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    audit_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    previous_audit_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    digital_signature: Mapped[str | None] = mapped_column(String(500), nullable=True)


class AuditChainHead(Base):
    __tablename__ = "fabric_audit_chain_heads"

    # Persisted "last hash" pointer; advanced only by compare-and-swap.
    chain_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_sequence_id: Mapped[int] = mapped_column(SequenceType, nullable=False)
    last_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    # Appends never go backwards in time, even if the wall clock does.
    last_occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QueryExecutionRecord(Base):
    __tablename__ = "fabric_query_executions"
    __table_args__ = (
        Index("ix_fabric_query_executions_user", "user_id", "started_at"),
        Index("ix_fabric_query_executions_correlation", "correlation_id"),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    master_query_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_sql: Mapped[str] = mapped_column(Text, nullable=False)
    parameters_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    role_context: Mapped[str | None] = mapped_column(String(100), nullable=True)
    correlation_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
