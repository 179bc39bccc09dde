from __future__ import annotations

import pytest

from tenantplane.domain.models import Tenant
from tenantplane.services.tenant_resolver import host_from_headers, normalize_host


async def _add_tenant(plane, *, desired: str | None, assigned: str | None = None, status: str = "active") -> int:
    primary = await plane.clients.global_client()
    async with primary.session() as session:
        tenant = Tenant(desired_domain=desired, assigned_domain=assigned, status=status)
        session.add(tenant)
        await session.commit()
        return tenant.id


def test_normalize_host_strips_port_case_and_brackets() -> None:
    assert normalize_host("Shop.Example.com:8443") == "shop.example.com"
    assert normalize_host("shop.example.com.") == "shop.example.com"
    assert normalize_host("[::1]:8000") == "::1"
    assert normalize_host("  ") == ""
    assert normalize_host(None) == ""


def test_forwarded_host_wins_over_host_header() -> None:
    headers = {"x-forwarded-host": "shop.example.com, edge.internal", "host": "app.internal:8000"}
    assert host_from_headers(headers) == "shop.example.com"
    assert host_from_headers({"host": "App.Internal:8000"}) == "app.internal"
    assert host_from_headers({}) == ""


@pytest.mark.asyncio
async def test_resolves_active_tenant_by_either_domain(make_plane) -> None:
    plane = await make_plane()
    tenant_id = await _add_tenant(plane, desired="shop.example.com", assigned="t1.platform.example")

    assert await plane.resolver.resolve_tenant_id("shop.example.com") == tenant_id
    assert await plane.resolver.resolve_tenant_id("SHOP.example.com:443") == tenant_id
    assert await plane.resolver.resolve_tenant_id("t1.platform.example") == tenant_id


@pytest.mark.asyncio
async def test_mixed_case_registered_domains_resolve(make_plane) -> None:
    plane = await make_plane()
    tenant_id = await _add_tenant(plane, desired="Shop.Example.com", assigned="T1.Platform.Example")

    assert await plane.resolver.resolve_tenant_id("Shop.Example.com") == tenant_id
    assert await plane.resolver.resolve_tenant_id("shop.example.com") == tenant_id
    assert await plane.resolver.resolve_tenant_id("t1.platform.example") == tenant_id


@pytest.mark.asyncio
async def test_inactive_and_unknown_hosts_resolve_to_primary(make_plane) -> None:
    plane = await make_plane()
    await _add_tenant(plane, desired="pending.example.com", status="pending")

    assert await plane.resolver.resolve_tenant_id("pending.example.com") == 0
    assert await plane.resolver.resolve_tenant_id("nobody.example.com") == 0
    assert await plane.resolver.resolve_tenant_id("") == 0


@pytest.mark.asyncio
async def test_resolution_soft_fails_when_primary_unavailable(make_plane, tmp_path) -> None:
    plane = await make_plane(
        init=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'primary.db'}",
    )
    assert await plane.resolver.resolve_tenant_id("shop.example.com") == 0


@pytest.mark.asyncio
async def test_host_to_env_fallback_url(make_plane) -> None:
    # A tenant resolved from its host routes through the static fallback map.
    plane = await make_plane(tenant_db_overrides='{"7": "url-X"}')
    primary = await plane.clients.global_client()
    async with primary.session() as session:
        session.add(Tenant(id=7, desired_domain="shop.example.com", status="active"))
        await session.commit()

    tenant_id = await plane.resolver.resolve_tenant_id("shop.example.com")
    assert tenant_id == 7
    assert await plane.locator.resolve_branch_url(tenant_id) == "url-X"
