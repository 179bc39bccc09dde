from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantplane.apps.api.main import create_app
from tenantplane.domain.models import Tenant
from tenantplane.services.plane import TenantPlane
from tenantplane.tests.utils.hosting import FakeHostingApi


ADMIN_HEADERS = {"Authorization": "Bearer admin-secret", "X-Actor": "ops@example.com"}


def _client(plane: TenantPlane) -> AsyncClient:
    # ASGITransport skips lifespan, so attach the plane the way startup would.
    app = create_app(plane.settings)
    app.state.plane = plane
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _add_tenant(plane: TenantPlane, tenant_id: int, host: str) -> None:
    primary = await plane.clients.global_client()
    async with primary.session() as session:
        session.add(Tenant(id=tenant_id, desired_domain=host, status="active"))
        await session.commit()


@pytest.mark.asyncio
async def test_health_envelope_and_legacy_alias(make_plane) -> None:
    plane = await make_plane()
    async with _client(plane) as client:
        versioned = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
        legacy = await client.get("/health")

    assert versioned.status_code == 200
    assert versioned.json()["data"] == {"status": "ok"}
    assert versioned.json()["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert versioned.headers["X-Request-Id"] == "req-123"
    assert legacy.json() == {"status": "ok"}
    assert legacy.headers["Deprecation"] == "true"


@pytest.mark.asyncio
async def test_resolve_uses_query_then_forwarded_host(make_plane) -> None:
    plane = await make_plane()
    await _add_tenant(plane, 7, "shop.example.com")
    async with _client(plane) as client:
        by_query = await client.get("/v1/tenant/resolve", params={"host": "Shop.Example.com:443"})
        by_header = await client.get("/v1/tenant/resolve", headers={"X-Forwarded-Host": "shop.example.com"})
        unknown = await client.get("/v1/tenant/resolve", params={"host": "nobody.example.com"})

    assert by_query.json()["data"] == {"host": "shop.example.com", "tenant_id": 7}
    assert by_header.json()["data"]["tenant_id"] == 7
    assert unknown.json()["data"]["tenant_id"] == 0


@pytest.mark.asyncio
async def test_settings_follow_the_request_tenant(make_plane) -> None:
    plane = await make_plane()
    await plane.settings_cascade.ensure_default_settings()
    await plane.settings_cascade.upsert_setting(7, "site_name", "Seven")
    await _add_tenant(plane, 7, "shop.example.com")
    async with _client(plane) as client:
        tenant = await client.get("/v1/settings", headers={"X-Forwarded-Host": "shop.example.com"})
        default = await client.get("/v1/settings", headers={"Host": "unknown.example.com"})

    assert tenant.json()["data"]["tenant_id"] == 7
    assert tenant.json()["data"]["settings"]["site_name"] == "Seven"
    assert tenant.json()["meta"]["tenant_id"] == 7
    assert default.json()["data"]["tenant_id"] == 0
    assert default.json()["data"]["settings"]["site_name"] == "Main Site"
    assert default.json()["meta"]["tenant_id"] == 0


@pytest.mark.asyncio
async def test_admin_routes_require_token(make_plane) -> None:
    plane = await make_plane()
    async with _client(plane) as client:
        missing = await client.get("/v1/admin/branches")
        wrong = await client.get("/v1/admin/branches", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_admin_disabled_without_configured_token(make_plane) -> None:
    plane = await make_plane(admin_api_token=None)
    async with _client(plane) as client:
        response = await client.get("/v1/admin/branches", headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "ADMIN_DISABLED"


@pytest.mark.asyncio
async def test_override_lifecycle(make_plane) -> None:
    plane = await make_plane()
    async with _client(plane) as client:
        put = await client.put(
            "/v1/admin/branches/4/override",
            headers=ADMIN_HEADERS,
            json={"url": "libsql://tenant-4.example"},
        )
        listed = await client.get("/v1/admin/branches", headers=ADMIN_HEADERS)
        rejected = await client.put(
            "/v1/admin/branches/0/override",
            headers=ADMIN_HEADERS,
            json={"url": "libsql://tenant-0.example"},
        )
        cleared = await client.delete("/v1/admin/branches/4/override", headers=ADMIN_HEADERS)
        described = await client.get("/v1/admin/branches/4", headers=ADMIN_HEADERS)

    assert put.json()["data"] == {"tenant_id": 4, "url": "libsql://tenant-4.example", "tier": "override"}
    assert listed.json()["data"]["overrides"] == {"4": "libsql://tenant-4.example"}
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "INVALID_OVERRIDE"
    assert cleared.json()["data"] == {"tenant_id": 4, "removed": True}
    assert described.json()["data"]["tier"] == "primary"


@pytest.mark.asyncio
async def test_provision_endpoint_success_and_failure(make_plane, libsql_as_sqlite) -> None:
    api = FakeHostingApi()
    api.on("POST", "/databases", 200, {"database": {"Name": "tenant-12", "Hostname": "tenant-12-acme.turso.io"}})
    plane = await make_plane(transport=api.transport)
    async with _client(plane) as client:
        ok = await client.post("/v1/admin/branches/12/provision", headers=ADMIN_HEADERS)
        invalid = await client.post("/v1/admin/branches/0/provision", headers=ADMIN_HEADERS)
        listed = await client.get("/v1/admin/branches", headers=ADMIN_HEADERS)

    assert ok.status_code == 200
    assert ok.json()["data"]["branch_url"] == "libsql://tenant-12-acme.turso.io"
    assert invalid.status_code == 502
    error = invalid.json()["error"]
    assert error["code"] == "PROVISION_FAILED"
    assert error["details"]["error"] == "invalid-tenant"
    assert error["details"]["step"] == "create-branch"
    items = listed.json()["data"]["items"]
    assert [(item["tenant_id"], item["updated_by"]) for item in items] == [(12, "ops@example.com")]


@pytest.mark.asyncio
async def test_deprovision_endpoints(make_plane) -> None:
    api = FakeHostingApi()
    plane = await make_plane(transport=api.transport, hosting_org="acme")
    async with _client(plane) as client:
        protected = await client.post(
            "/v1/admin/branches/deprovision",
            headers=ADMIN_HEADERS,
            json={"url": "libsql://primary-acme.turso.io"},
        )
        removed = await client.delete("/v1/admin/branches/9", headers=ADMIN_HEADERS)

    assert protected.status_code == 400
    assert protected.json()["error"]["code"] == "PROTECTED_INSTANCE"
    assert removed.status_code == 200
    assert removed.json()["data"]["name"] == "tenant-9"
    assert api.calls == [("DELETE", "/organizations/acme/databases/tenant-9")]


@pytest.mark.asyncio
async def test_settings_admin_round_trip(make_plane) -> None:
    plane = await make_plane()
    async with _client(plane) as client:
        seeded = await client.post("/v1/admin/settings/defaults", headers=ADMIN_HEADERS)
        put = await client.put(
            "/v1/admin/settings/5/site_name",
            headers=ADMIN_HEADERS,
            json={"value": "Five", "name": "Site name"},
        )
        rows = await client.get("/v1/admin/settings/5", headers=ADMIN_HEADERS)
        deleted = await client.delete("/v1/admin/settings/5/site_name", headers=ADMIN_HEADERS)
        missing = await client.delete("/v1/admin/settings/5/site_name", headers=ADMIN_HEADERS)
        refreshed = await client.post("/v1/admin/settings/refresh", headers=ADMIN_HEADERS)

    assert seeded.json()["data"]["touched"] == 13
    assert put.json()["data"]["value"] == "Five"
    body = rows.json()["data"]
    assert [row["key"] for row in body["items"]] == ["site_name"]
    assert body["effective"]["site_name"] == "Five"
    assert body["effective"]["ad_post_cost"] == "10"
    assert deleted.json()["data"]["deleted"] is True
    assert missing.status_code == 404
    assert refreshed.json()["data"]["settings"]["site_name"] == "Main Site"


@pytest.mark.asyncio
async def test_missing_primary_config_is_reported(make_plane) -> None:
    plane = await make_plane(init=False, database_url="")
    async with _client(plane) as client:
        settings = await client.get("/v1/settings")
        admin = await client.get("/v1/admin/branches", headers=ADMIN_HEADERS)

    assert settings.status_code == 500
    assert settings.json()["error"]["code"] == "CONFIG_ERROR"
    assert admin.status_code == 500
    assert admin.json()["error"]["code"] == "CONFIG_ERROR"


@pytest.mark.asyncio
async def test_route_ensures_schema_on_the_tenant_database(make_plane, sqlite_url) -> None:
    plane = await make_plane()
    branch_url = sqlite_url("tenant-7")
    await _add_tenant(plane, 7, "shop.example.com")
    await plane.locator.set_override(7, branch_url)
    async with _client(plane) as client:
        routed = await client.get("/v1/tenant/route", headers={"X-Forwarded-Host": "shop.example.com"})
        default = await client.get("/v1/tenant/route", headers={"Host": "unknown.example.com"})

    assert routed.status_code == 200
    assert routed.json()["data"] == {"tenant_id": 7, "tier": "override", "url": branch_url, "schema_ready": True}
    assert default.json()["data"]["tier"] == "primary"
    assert default.json()["data"]["tenant_id"] == 0
    branch = await plane.clients.client_for_url(branch_url)
    rows = await branch.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'posts'")
    assert rows == [{"name": "posts"}]


@pytest.mark.asyncio
async def test_telemetry_reports_recent_requests(make_plane) -> None:
    plane = await make_plane()
    async with _client(plane) as client:
        await client.get("/v1/health")
        await client.get("/health")
        response = await client.get("/v1/admin/telemetry", headers=ADMIN_HEADERS, params={"window_s": 60})

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["window_s"] == 60
    # The telemetry call itself is recorded only after it responds.
    assert data["requests"]["count"] == 2
    assert data["requests"]["error_rate"] == 0
    assert data["overrides"] == 0
