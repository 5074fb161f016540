from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from fabricsec.core.clock import ensure_utc, utcnow
from fabricsec.core.config import get_settings
from fabricsec.core.errors import ConflictError, InvalidRequestError, NotFoundError
from fabricsec.core.logging import get_correlation_id
from fabricsec.domain.models import User
from fabricsec.domain.types import AuditEventType, RiskLevel, Severity, UserStatus
from fabricsec.persistence.repos import authz as authz_repo
from fabricsec.services.audit import AuditChain, AuditEvent, get_audit_chain


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginOutcome:
    user_id: str
    locked: bool
    failed_attempts: int
    locked_until: datetime | None
    audit_record_id: int


def is_account_locked(user: User, *, now: datetime | None = None) -> bool:
    # Inactive accounts are treated as locked; timed locks lapse on their own.
    if user.status == UserStatus.INACTIVE.value:
        return True
    if user.status != UserStatus.LOCKED.value:
        return False
    if user.account_locked_until is None:
        return True
    return ensure_utc(user.account_locked_until) > (now or utcnow())


async def _require_user(session: AsyncSession, *, user_id: str) -> User:
    user = await authz_repo.get_user(session, user_id=user_id, for_update=True)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}", correlation_id=get_correlation_id())
    return user


async def provision_user(
    session: AsyncSession,
    *,
    user_id: str,
    username: str,
    department: str | None = None,
    mfa_enabled: bool = False,
    status: str = UserStatus.ACTIVE.value,
    created_by: str = "SYSTEM",
    chain: AuditChain | None = None,
) -> User:
    # Local provisioning or first sync from the identity provider.
    chain = chain or get_audit_chain()
    if status not in {item.value for item in UserStatus}:
        raise InvalidRequestError(f"Unknown user status: {status}")
    if await authz_repo.get_user(session, user_id=user_id) is not None:
        raise ConflictError(f"User already exists: {user_id}", correlation_id=get_correlation_id())
    now = utcnow()
    user = User(
        id=user_id,
        username=username,
        department=department,
        status=status,
        failed_login_attempts=0,
        mfa_enabled=mfa_enabled,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.USER_LIFECYCLE.value,
            event_subtype="PROVISIONED",
            user_id=created_by,
            payload={"target_user_id": user_id, "username": username, "status": status},
            compliance_event=True,
        ),
    )
    logger.info("user_provisioned user_id=%s status=%s", user_id, status)
    return user


async def set_user_status(
    session: AsyncSession,
    *,
    user_id: str,
    status: str,
    changed_by: str,
    reason: str | None = None,
    chain: AuditChain | None = None,
) -> User:
    chain = chain or get_audit_chain()
    if status not in {item.value for item in UserStatus}:
        raise InvalidRequestError(f"Unknown user status: {status}")
    user = await _require_user(session, user_id=user_id)
    previous = user.status
    now = utcnow()
    user.status = status
    user.updated_at = now
    if status == UserStatus.ACTIVE.value:
        user.failed_login_attempts = 0
        user.account_locked_until = None
    await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.USER_LIFECYCLE.value,
            event_subtype="STATUS_CHANGED",
            user_id=changed_by,
            payload={
                "target_user_id": user_id,
                "previous_status": previous,
                "status": status,
                "reason": reason,
            },
            security_event=True,
            compliance_event=True,
            risk_level=RiskLevel.MEDIUM.value,
        ),
    )
    logger.info("user_status_changed user_id=%s from=%s to=%s", user_id, previous, status)
    return user


async def record_login_failure(
    session: AsyncSession,
    *,
    user_id: str,
    ip_address: str | None = None,
    session_id: str | None = None,
    chain: AuditChain | None = None,
) -> LoginOutcome:
    settings = get_settings()
    chain = chain or get_audit_chain()
    user = await _require_user(session, user_id=user_id)
    now = utcnow()
    user.failed_login_attempts = int(user.failed_login_attempts or 0) + 1
    user.updated_at = now
    locked_now = False
    if (
        user.failed_login_attempts >= settings.auth_max_failed_logins
        and user.status != UserStatus.INACTIVE.value
    ):
        user.status = UserStatus.LOCKED.value
        user.account_locked_until = now + timedelta(minutes=settings.auth_lockout_minutes)
        locked_now = True

    record = await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.AUTH.value,
            event_subtype="ACCOUNT_LOCKED" if locked_now else "LOGIN_FAILURE",
            severity=Severity.WARN.value if locked_now else Severity.INFO.value,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            payload={
                "failed_attempts": user.failed_login_attempts,
                "locked_until": user.account_locked_until.isoformat() if locked_now else None,
            },
            security_event=True,
            risk_level=RiskLevel.HIGH.value if locked_now else RiskLevel.MEDIUM.value,
        ),
    )
    if locked_now:
        logger.warning(
            "account_locked user_id=%s failed_attempts=%s",
            user_id,
            user.failed_login_attempts,
        )
    return LoginOutcome(
        user_id=user_id,
        locked=is_account_locked(user, now=now),
        failed_attempts=user.failed_login_attempts,
        locked_until=user.account_locked_until,
        audit_record_id=record.id,
    )


async def record_login_success(
    session: AsyncSession,
    *,
    user_id: str,
    ip_address: str | None = None,
    session_id: str | None = None,
    chain: AuditChain | None = None,
) -> LoginOutcome:
    chain = chain or get_audit_chain()
    user = await _require_user(session, user_id=user_id)
    now = utcnow()
    if is_account_locked(user, now=now):
        # Caller must refuse the login; the attempt itself is still audited.
        record = await chain.append(
            session,
            AuditEvent(
                event_type=AuditEventType.AUTH.value,
                event_subtype="LOGIN_BLOCKED",
                severity=Severity.WARN.value,
                user_id=user_id,
                session_id=session_id,
                ip_address=ip_address,
                payload={"status": user.status},
                security_event=True,
                risk_level=RiskLevel.HIGH.value,
            ),
        )
        return LoginOutcome(
            user_id=user_id,
            locked=True,
            failed_attempts=int(user.failed_login_attempts or 0),
            locked_until=user.account_locked_until,
            audit_record_id=record.id,
        )

    if user.status == UserStatus.LOCKED.value:
        user.status = UserStatus.ACTIVE.value
    user.failed_login_attempts = 0
    user.account_locked_until = None
    user.last_login_at = now
    user.updated_at = now
    record = await chain.append(
        session,
        AuditEvent(
            event_type=AuditEventType.AUTH.value,
            event_subtype="LOGIN_SUCCESS",
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            payload={"mfa_enabled": bool(user.mfa_enabled)},
            security_event=True,
        ),
    )
    return LoginOutcome(
        user_id=user_id,
        locked=False,
        failed_attempts=0,
        locked_until=None,
        audit_record_id=record.id,
    )
