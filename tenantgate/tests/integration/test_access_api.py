from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Request
import pytest

from tenantgate.apps.api.deps import require_app_access
from tenantgate.apps.api.main import create_app
from tenantgate.core.clock import utc_now
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.access import grants
from tenantgate.services.access.decision import AccessContext
from tenantgate.services.auth.tokens import issue_token
from tenantgate.tests.utils.api import api_client
from tenantgate.tests.utils.seed import (
    auth_headers,
    count_access_logs,
    list_access_log_rows,
    seed_scenario,
    seed_user,
)


async def _grant(scenario, user, role_in_app: str | None = None) -> None:
    async with SessionLocal() as session:
        await grants.grant_access(
            session,
            grants.GrantRequest(
                tenant_id=scenario.tenant_id,
                user_id=user.id,
                application_slug=scenario.application.slug,
                granted_by=scenario.admin.id,
                role_in_app=role_in_app,
            ),
        )


@pytest.mark.asyncio
async def test_access_check_returns_enveloped_access_context() -> None:
    scenario = await seed_scenario()
    await _grant(scenario, scenario.user)

    async with api_client() as client:
        response = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            headers={**auth_headers(scenario.user), "X-Request-Id": "req-check-1"},
        )
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-check-1"
    body = response.json()
    assert body["meta"]["request_id"] == "req-check-1"
    assert body["meta"]["api_version"] == "v1"
    data = body["data"]
    assert data["application_slug"] == scenario.application.slug
    assert data["tenant_id"] == scenario.tenant_id
    assert data["access_source"] == "database"
    assert data["license"]["seats_used"] == 1
    assert data["seats"] == {"capacity": 5, "used": 1, "available": 4}

    rows = await list_access_log_rows(user_id=scenario.user.id)
    assert len(rows) == 1
    assert rows[0].request_id == "req-check-1"
    assert rows[0].api_path == f"/v1/apps/{scenario.application.slug}/access"
    assert rows[0].http_method == "GET"


@pytest.mark.asyncio
async def test_access_check_uses_token_fast_path() -> None:
    scenario = await seed_scenario()
    headers = auth_headers(scenario.user, allowed_apps=(scenario.application.slug,))
    async with api_client() as client:
        response = await client.get(f"/v1/apps/{scenario.application.slug}/access", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["access_source"] == "token"


@pytest.mark.asyncio
async def test_access_check_without_token_is_unauthenticated() -> None:
    scenario = await seed_scenario()
    async with api_client() as client:
        response = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            headers={"X-Tenant-Id": scenario.tenant_id},
        )
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "UNAUTHENTICATED"
    assert "request_id" in body["meta"]


@pytest.mark.asyncio
async def test_expired_token_is_denied_and_logged() -> None:
    scenario = await seed_scenario()
    token = issue_token(scenario.user, allowed_apps=[], now=utc_now() - timedelta(hours=3), ttl_seconds=60)
    async with api_client() as client:
        response = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            headers={"Authorization": f"Bearer {token}", "X-Tenant-Id": scenario.tenant_id},
        )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TOKEN_EXPIRED"
    assert await count_access_logs(scenario.tenant_id) == 1


@pytest.mark.asyncio
async def test_inactive_account_is_rejected() -> None:
    scenario = await seed_scenario()
    dormant = await seed_user(tenant_id=scenario.tenant_id, is_active=False)
    async with api_client() as client:
        response = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            headers=auth_headers(dormant),
        )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "ACCOUNT_INACTIVE"


@pytest.mark.asyncio
async def test_access_check_denials_carry_reason_codes() -> None:
    scenario = await seed_scenario()
    await _grant(scenario, scenario.user, role_in_app="operations")
    headers = auth_headers(scenario.user)

    async with api_client() as client:
        missing_app = await client.get("/v1/apps/no-such-app/access", headers=headers)
        wrong_role = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            params={"required_role": "admin"},
            headers=headers,
        )
        no_grant = await client.get(
            f"/v1/apps/{scenario.application.slug}/access",
            headers=auth_headers(scenario.admin),
        )
    assert missing_app.status_code == 404
    assert missing_app.json()["error"]["code"] == "APPLICATION_NOT_FOUND"
    assert wrong_role.status_code == 403
    assert wrong_role.json()["error"]["code"] == "INSUFFICIENT_ROLE"
    assert wrong_role.json()["error"]["details"] == {"required_role": "admin"}
    assert no_grant.status_code == 403
    assert no_grant.json()["error"]["code"] == "NO_USER_ACCESS"

    reasons = [row.reason_code for row in await list_access_log_rows(user_id=scenario.user.id)]
    assert reasons == ["APPLICATION_NOT_FOUND", "INSUFFICIENT_ROLE"]


@pytest.mark.asyncio
async def test_route_guard_attaches_context_to_request() -> None:
    scenario = await seed_scenario()
    await _grant(scenario, scenario.user, role_in_app="manager")

    app = create_app()
    feature_router = APIRouter()

    @feature_router.get("/quotes")
    async def list_quotes(
        request: Request,
        access: AccessContext = Depends(require_app_access(scenario.application.slug, "operations")),
    ) -> dict:
        assert request.state.app_access is access
        return {"role_in_app": access.role_in_app, "tenant_id": access.tenant_id}

    app.include_router(feature_router, prefix="/v1")

    async with api_client(app) as client:
        allowed = await client.get("/v1/quotes", headers=auth_headers(scenario.user))
        denied = await client.get("/v1/quotes", headers=auth_headers(scenario.admin))
    assert allowed.status_code == 200
    assert allowed.json()["data"] == {"role_in_app": "manager", "tenant_id": scenario.tenant_id}
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "NO_USER_ACCESS"
