"""security core

Revision ID: 0001_security_core
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_security_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "fabric_users",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("department", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("account_locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mfa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=50), nullable=False, server_default="SYSTEM"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'LOCKED', 'PENDING')",
            name="ck_fabric_users_status",
        ),
    )

    op.create_table(
        "fabric_roles",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("role_level", sa.Integer(), nullable=False),
        # Documentary hierarchy only; grants are never inherited through it.
        sa.Column("parent_role_id", sa.String(length=50), sa.ForeignKey("fabric_roles.id"), nullable=True),
        sa.Column("is_system_role", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(length=50), nullable=False, server_default="SYSTEM"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("role_level BETWEEN 1 AND 5", name="ck_fabric_roles_level"),
    )

    op.create_table(
        "fabric_permissions",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("resource_pattern", sa.String(length=200), nullable=False, server_default="*"),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_fabric_permissions_resource", "fabric_permissions", ["resource_type", "action"], unique=False
    )

    op.create_table(
        "fabric_role_permissions",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("role_id", sa.String(length=50), sa.ForeignKey("fabric_roles.id"), nullable=False),
        sa.Column("permission_id", sa.String(length=50), sa.ForeignKey("fabric_permissions.id"), nullable=False),
        sa.Column("granted_by", sa.String(length=50), nullable=False, server_default="SYSTEM"),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("role_id", "permission_id", name="uq_fabric_role_permissions"),
    )
    op.create_index(
        "ix_fabric_role_permissions_role_id", "fabric_role_permissions", ["role_id"], unique=False
    )

    op.create_table(
        "fabric_user_roles",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("user_id", sa.String(length=50), sa.ForeignKey("fabric_users.id"), nullable=False),
        sa.Column("role_id", sa.String(length=50), sa.ForeignKey("fabric_roles.id"), nullable=False),
        sa.Column("assigned_by", sa.String(length=50), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("revoked_by", sa.String(length=50), nullable=True),
        sa.Column("revoke_reason", sa.String(length=500), nullable=True),
        sa.UniqueConstraint("user_id", "role_id", "effective_from", name="uq_fabric_user_roles_window"),
    )
    op.create_index("ix_fabric_user_roles_user", "fabric_user_roles", ["user_id"], unique=False)
    op.create_index(
        "ix_fabric_user_roles_active",
        "fabric_user_roles",
        ["is_active", "effective_from", "effective_until"],
        unique=False,
    )

    op.create_table(
        "fabric_audit_records",
        # Sequence ids come from the chain head, never from a database sequence.
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_subtype", sa.String(length=50), nullable=True),
        sa.Column("severity", sa.String(length=10), nullable=False),
        sa.Column("user_id", sa.String(length=50), nullable=True),
        sa.Column("session_id", sa.String(length=100), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        sa.Column("security_event_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("compliance_event_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("risk_level", sa.String(length=20), nullable=False, server_default="LOW"),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("audit_hash", sa.String(length=128), nullable=False),
        sa.Column("previous_audit_hash", sa.String(length=128), nullable=False),
        sa.Column("digital_signature", sa.String(length=500), nullable=True),
    )
    op.create_index(
        "ix_fabric_audit_records_occurred_at", "fabric_audit_records", ["occurred_at", "id"], unique=False
    )
    op.create_index(
        "ix_fabric_audit_records_correlation", "fabric_audit_records", ["correlation_id"], unique=False
    )
    op.create_index(
        "ix_fabric_audit_records_event_type", "fabric_audit_records", ["event_type"], unique=False
    )
    op.create_index(
        "ix_fabric_audit_records_retention",
        "fabric_audit_records",
        ["compliance_event_flag", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "fabric_audit_chain_heads",
        sa.Column("chain_id", sa.String(length=50), primary_key=True),
        sa.Column("last_sequence_id", sa.BigInteger(), nullable=False),
        sa.Column("last_hash", sa.String(length=128), nullable=False),
        sa.Column("last_occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "fabric_query_executions",
        sa.Column("id", sa.String(length=50), primary_key=True),
        sa.Column("master_query_id", sa.String(length=100), nullable=True),
        sa.Column("resolved_sql", sa.Text(), nullable=False),
        sa.Column("parameters_json", postgresql.JSONB(), nullable=True),
        sa.Column("user_id", sa.String(length=50), nullable=False),
        sa.Column("role_context", sa.String(length=100), nullable=True),
        sa.Column("correlation_id", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(length=30), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_fabric_query_executions_user", "fabric_query_executions", ["user_id", "started_at"], unique=False
    )
    op.create_index(
        "ix_fabric_query_executions_correlation",
        "fabric_query_executions",
        ["correlation_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_fabric_query_executions_correlation", table_name="fabric_query_executions")
    op.drop_index("ix_fabric_query_executions_user", table_name="fabric_query_executions")
    op.drop_table("fabric_query_executions")
    op.drop_table("fabric_audit_chain_heads")
    op.drop_index("ix_fabric_audit_records_retention", table_name="fabric_audit_records")
    op.drop_index("ix_fabric_audit_records_event_type", table_name="fabric_audit_records")
    op.drop_index("ix_fabric_audit_records_correlation", table_name="fabric_audit_records")
    op.drop_index("ix_fabric_audit_records_occurred_at", table_name="fabric_audit_records")
    op.drop_table("fabric_audit_records")
    op.drop_index("ix_fabric_user_roles_active", table_name="fabric_user_roles")
    op.drop_index("ix_fabric_user_roles_user", table_name="fabric_user_roles")
    op.drop_table("fabric_user_roles")
    op.drop_index("ix_fabric_role_permissions_role_id", table_name="fabric_role_permissions")
    op.drop_table("fabric_role_permissions")
    op.drop_index("ix_fabric_permissions_resource", table_name="fabric_permissions")
    op.drop_table("fabric_permissions")
    op.drop_table("fabric_roles")
    op.drop_table("fabric_users")
