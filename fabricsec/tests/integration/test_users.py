from __future__ import annotations

from datetime import timedelta

import pytest

from fabricsec.core.clock import utcnow
from fabricsec.core.errors import ConflictError, InvalidRequestError, NotFoundError
from fabricsec.domain.models import User
from fabricsec.services.users import (
    is_account_locked,
    provision_user,
    record_login_failure,
    record_login_success,
    set_user_status,
)
from fabricsec.tests.utils.authz import create_user, fetch_audit_records


@pytest.mark.asyncio
async def test_provisioning_is_audited_and_unique(session_factory, chain) -> None:
    await create_user(session_factory, chain, user_id="ops-1")
    async with session_factory() as session:
        with pytest.raises(ConflictError):
            await provision_user(session, user_id="ops-1", username="ops-1", chain=chain)
    async with session_factory() as session:
        with pytest.raises(InvalidRequestError):
            await provision_user(session, user_id="ops-2", username="ops-2", status="SUSPENDED", chain=chain)
    records = await fetch_audit_records(session_factory, event_type="USER_LIFECYCLE")
    assert [record.event_subtype for record in records] == ["PROVISIONED"]
    assert records[0].compliance_event_flag


@pytest.mark.asyncio
async def test_repeated_failures_lock_the_account(session_factory, chain) -> None:
    await create_user(session_factory, chain, user_id="teller-1")
    outcomes = []
    for _ in range(5):
        async with session_factory() as session:
            outcomes.append(await record_login_failure(session, user_id="teller-1", ip_address="10.1.1.1", chain=chain))
    assert [outcome.locked for outcome in outcomes] == [False, False, False, False, True]
    assert outcomes[-1].failed_attempts == 5
    assert outcomes[-1].locked_until is not None

    records = await fetch_audit_records(session_factory, event_type="AUTH")
    assert [record.event_subtype for record in records][-1] == "ACCOUNT_LOCKED"
    assert records[-1].risk_level == "HIGH"
    assert all(record.security_event_flag for record in records)

    # A correct password while locked is refused and audited.
    async with session_factory() as session:
        blocked = await record_login_success(session, user_id="teller-1", chain=chain)
    assert blocked.locked
    records = await fetch_audit_records(session_factory, event_type="AUTH")
    assert records[-1].event_subtype == "LOGIN_BLOCKED"


@pytest.mark.asyncio
async def test_unlock_resets_counters(session_factory, chain) -> None:
    await create_user(session_factory, chain, user_id="teller-2")
    for _ in range(5):
        async with session_factory() as session:
            await record_login_failure(session, user_id="teller-2", chain=chain)
    async with session_factory() as session:
        user = await set_user_status(
            session, user_id="teller-2", status="ACTIVE", changed_by="security-desk", reason="verified", chain=chain
        )
    assert user.failed_login_attempts == 0
    assert user.account_locked_until is None
    async with session_factory() as session:
        outcome = await record_login_success(session, user_id="teller-2", chain=chain)
    assert not outcome.locked
    async with session_factory() as session:
        refreshed = await session.get(User, "teller-2")
        assert refreshed is not None
        assert refreshed.last_login_at is not None


@pytest.mark.asyncio
async def test_success_resets_failure_count(session_factory, chain) -> None:
    await create_user(session_factory, chain, user_id="teller-3")
    for _ in range(3):
        async with session_factory() as session:
            await record_login_failure(session, user_id="teller-3", chain=chain)
    async with session_factory() as session:
        outcome = await record_login_success(session, user_id="teller-3", chain=chain)
    assert outcome.failed_attempts == 0
    async with session_factory() as session:
        refreshed = await session.get(User, "teller-3")
        assert refreshed is not None
        assert refreshed.failed_login_attempts == 0


@pytest.mark.asyncio
async def test_unknown_user_login_is_not_found(session_factory, chain) -> None:
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await record_login_failure(session, user_id="ghost", chain=chain)


def test_lock_state_is_time_bound() -> None:
    now = utcnow()
    assert is_account_locked(User(id="u", username="u", status="LOCKED", account_locked_until=now + timedelta(minutes=5)), now=now)
    assert not is_account_locked(User(id="u", username="u", status="LOCKED", account_locked_until=now - timedelta(minutes=5)), now=now)
    assert is_account_locked(User(id="u", username="u", status="LOCKED", account_locked_until=None), now=now)
    assert is_account_locked(User(id="u", username="u", status="INACTIVE"), now=now)
    assert not is_account_locked(User(id="u", username="u", status="ACTIVE"), now=now)
