from __future__ import annotations

from typing import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from fabricsec.apps.api.deps import get_chain, get_db, get_gateway
from fabricsec.apps.api.main import create_app
from fabricsec.services.query.gateway import QueryExecutionGateway
from fabricsec.services.query.pool import ReadOnlyQueryPool
from fabricsec.tests.utils.authz import count_audit_records, create_user, fetch_audit_records


@pytest.fixture
async def client(engine, session_factory, chain, seeded) -> AsyncIterator[AsyncClient]:
    app = create_app()

    async def _override_db():
        async with session_factory() as session:
            yield session

    gateway = QueryExecutionGateway(pool=ReadOnlyQueryPool(engine), session_factory=session_factory, chain=chain)
    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_chain] = lambda: chain
    app.dependency_overrides[get_gateway] = lambda: gateway

    await create_user(session_factory, chain, user_id="admin-1", role_id="ADMIN")
    await create_user(session_factory, chain, user_id="analyst-1", role_id="ANALYST")
    await create_user(session_factory, chain, user_id="viewer-1", role_id="VIEWER")
    await create_user(session_factory, chain, user_id="newhire-1")
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE branches (code VARCHAR(10) PRIMARY KEY, region VARCHAR(10))"))
        await conn.execute(
            text("INSERT INTO branches (code, region) VALUES (:code, :region)"),
            [{"code": "B1", "region": "EU"}, {"code": "B2", "region": "US"}],
        )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _headers(user_id: str, **extra: str) -> dict[str, str]:
    return {"X-User-Id": user_id, **extra}


@pytest.mark.asyncio
async def test_missing_identity_is_unauthorized(client) -> None:
    response = await client.get("/v1/authz/users/admin-1/permissions")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_effective_permissions_listing(client) -> None:
    response = await client.get("/v1/authz/users/analyst-1/permissions", headers=_headers("admin-1"))
    assert response.status_code == 200
    data = response.json()["data"]
    assert [role["id"] for role in data["roles"]] == ["ANALYST"]
    names = [permission["name"] for permission in data["permissions"]]
    assert names == sorted(names)
    assert "QUERY_READ" in names

    check = await client.get(
        "/v1/authz/users/viewer-1/permissions/USER_MGMT_ALL", headers=_headers("admin-1")
    )
    assert check.json()["data"]["granted"] is False


@pytest.mark.asyncio
async def test_assignment_requires_user_management(client) -> None:
    response = await client.post(
        "/v1/authz/assignments",
        json={"user_id": "newhire-1", "role_id": "ANALYST"},
        headers=_headers("viewer-1"),
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_assignment_flows_correlation_into_audit(client, session_factory) -> None:
    response = await client.post(
        "/v1/authz/assignments",
        json={"user_id": "newhire-1", "role_id": "OPERATOR", "reason": "night shift"},
        headers=_headers("admin-1", **{"X-Correlation-Id": "corr-api-assign"}),
    )
    assert response.status_code == 201
    assert response.headers["X-Correlation-Id"] == "corr-api-assign"
    body = response.json()
    assert body["data"]["correlation_id"] == "corr-api-assign"
    assert body["meta"]["correlation_id"] == "corr-api-assign"
    assert await count_audit_records(
        session_factory, event_type="ROLE_ASSIGNMENT", correlation_id="corr-api-assign"
    ) == 1

    duplicate = await client.post(
        "/v1/authz/assignments",
        json={"user_id": "newhire-1", "role_id": "OPERATOR"},
        headers=_headers("admin-1", **{"X-Correlation-Id": "corr-api-dup"}),
    )
    assert duplicate.status_code == 409
    error = duplicate.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"]["correlation_id"] == "corr-api-dup"


@pytest.mark.asyncio
async def test_invalid_window_is_a_bad_request(client) -> None:
    response = await client.post(
        "/v1/authz/assignments",
        json={
            "user_id": "newhire-1",
            "role_id": "VIEWER",
            "effective_from": "2030-01-02T00:00:00Z",
            "effective_until": "2030-01-01T00:00:00Z",
        },
        headers=_headers("admin-1"),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_unknown_role_is_not_found(client) -> None:
    response = await client.post(
        "/v1/authz/assignments",
        json={"user_id": "newhire-1", "role_id": "ROOT"},
        headers=_headers("admin-1"),
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_revoke_then_revoke_again(client, session_factory) -> None:
    first = await client.post(
        "/v1/authz/assignments/revoke",
        json={"user_id": "analyst-1", "role_id": "ANALYST", "reason": "transfer"},
        headers=_headers("admin-1"),
    )
    second = await client.post(
        "/v1/authz/assignments/revoke",
        json={"user_id": "analyst-1", "role_id": "ANALYST"},
        headers=_headers("admin-1"),
    )
    assert first.json()["data"]["revoked"] is True
    assert second.json()["data"]["revoked"] is False
    assert await count_audit_records(session_factory, event_type="ROLE_REVOCATION") == 1


@pytest.mark.asyncio
async def test_audit_endpoints_require_audit_view(client) -> None:
    response = await client.get("/v1/audit/records", headers=_headers("analyst-1"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_audit_listing_verification_and_escalation(client, session_factory) -> None:
    listing = await client.get(
        "/v1/audit/records", params={"event_type": "ROLE_ASSIGNMENT", "limit": 2}, headers=_headers("admin-1")
    )
    assert listing.status_code == 200
    page = listing.json()["data"]
    assert len(page["items"]) == 2
    assert page["next_offset"] == 2
    assert all(item["event_type"] == "ROLE_ASSIGNMENT" for item in page["items"])

    verify = await client.get("/v1/audit/verify", headers=_headers("admin-1"))
    assert verify.json()["data"]["valid"] is True

    target = page["items"][0]["id"]
    escalation = await client.post(
        f"/v1/audit/records/{target}/escalate", json={"reason": "review"}, headers=_headers("admin-1")
    )
    assert escalation.status_code == 201
    assert escalation.json()["data"]["event_type"] == "ESCALATION"
    assert await count_audit_records(session_factory, event_type="ESCALATION") == 1

    missing = await client.post("/v1/audit/records/999999/escalate", headers=_headers("admin-1"))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_query_execution_and_rejection(client, session_factory) -> None:
    payload = {"sql": "SELECT code, region FROM branches WHERE region = :region", "parameters": {"region": "EU"}}
    executed = await client.post(
        "/v1/queries/execute",
        json=payload,
        headers=_headers("analyst-1", **{"X-Correlation-Id": "corr-api-query"}),
    )
    assert executed.status_code == 200
    data = executed.json()["data"]
    assert data["status"] == "SUCCESS"
    assert data["rows"] == [{"code": "B1", "region": "EU"}]
    assert data["correlation_id"] == "corr-api-query"

    rejected = await client.post("/v1/queries/execute", json=payload, headers=_headers("viewer-1"))
    assert rejected.status_code == 200
    assert rejected.json()["data"]["status"] == "SECURITY_REJECTED"
    records = await fetch_audit_records(session_factory, event_type="QUERY_REJECTED")
    assert [record.user_id for record in records] == ["viewer-1"]


@pytest.mark.asyncio
async def test_declared_report_resource_does_not_open_tables(client, session_factory) -> None:
    # VIEWER holds reports/* only; naming a report must not unlock the table actually read.
    response = await client.post(
        "/v1/queries/execute",
        json={
            "sql": "SELECT code, region FROM branches WHERE region = :region",
            "parameters": {"region": "EU"},
            "resource": "reports/daily",
        },
        headers=_headers("viewer-1"),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "SECURITY_REJECTED"
    assert data["rows"] == []
    assert "ACCESS_DENIED: No READ or EXECUTE permission covers resource branches" in data["reasons"]
    records = await fetch_audit_records(session_factory, event_type="QUERY_REJECTED")
    assert [record.user_id for record in records] == ["viewer-1"]


@pytest.mark.asyncio
async def test_query_validation_dry_run(client, session_factory) -> None:
    response = await client.post(
        "/v1/queries/validate",
        json={"sql": "SELECT code FROM branches WHERE region = 'EU'"},
        headers=_headers("analyst-1"),
    )
    data = response.json()["data"]
    assert data["valid"] is False
    assert data["error_code"] == "SECURITY_REJECTED"
    assert any(reason.startswith("LITERAL") for reason in data["reasons"])
    assert await count_audit_records(session_factory, event_type="QUERY_REJECTED") == 0


@pytest.mark.asyncio
async def test_query_estimate(client) -> None:
    response = await client.post(
        "/v1/queries/estimate",
        json={"sql": "SELECT code FROM branches WHERE region <> :region", "parameters": {"region": "APAC"}},
        headers=_headers("analyst-1"),
    )
    assert response.json()["data"]["estimated_rows"] == 2


@pytest.mark.asyncio
async def test_health_is_unversioned(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["readonly_pool"]["healthy"] is True
