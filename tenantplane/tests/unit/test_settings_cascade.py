from __future__ import annotations

import pytest

from tenantplane.domain.models import AppSetting
from tenantplane.services.settings_cascade import DEFAULT_SETTINGS, fold_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_default_settings_seed_is_idempotent(make_plane) -> None:
    plane = await make_plane()
    first = await plane.settings_cascade.ensure_default_settings()
    second = await plane.settings_cascade.ensure_default_settings()

    assert first == len(DEFAULT_SETTINGS)
    assert second == 0
    settings = await plane.settings_cascade.global_settings()
    assert settings["site_name"] == "Main Site"
    assert settings["new_user_points"] == "100"


@pytest.mark.asyncio
async def test_default_seed_backfills_blank_rows_without_overwriting_values(make_plane) -> None:
    plane = await make_plane()
    await plane.settings_cascade.upsert_setting(0, "site_name", "Custom Site")
    await plane.settings_cascade.upsert_setting(0, "ad_post_cost", "")

    await plane.settings_cascade.ensure_default_settings()
    rows = {row.key: row for row in await plane.settings_cascade.list_setting_rows(0)}

    assert rows["site_name"].value == "Custom Site"
    assert rows["site_name"].name == "Site name"
    assert rows["ad_post_cost"].value == "10"


@pytest.mark.asyncio
async def test_tenant_override_and_removal(make_plane) -> None:
    plane = await make_plane()
    cascade = plane.settings_cascade
    await cascade.ensure_default_settings()

    await cascade.upsert_setting(5, "site_name", "Tenant Five")
    merged = await cascade.tenant_settings(5)
    assert merged["site_name"] == "Tenant Five"
    assert merged["comment_cost"] == "0"

    assert await cascade.delete_setting(5, "site_name") is True
    merged = await cascade.tenant_settings(5)
    assert merged["site_name"] == "Main Site"
    assert await cascade.delete_setting(5, "site_name") is False


@pytest.mark.asyncio
async def test_tenant_zero_reads_global_copy(make_plane) -> None:
    plane = await make_plane()
    await plane.settings_cascade.ensure_default_settings()

    merged = await plane.settings_cascade.tenant_settings(0)
    merged["site_name"] = "mutated"
    assert (await plane.settings_cascade.global_settings())["site_name"] == "Main Site"


@pytest.mark.asyncio
async def test_global_cache_is_reused_within_ttl_and_refetched_after(make_plane) -> None:
    clock = FakeClock()
    plane = await make_plane(time_source=clock)
    cascade = plane.settings_cascade
    await cascade.ensure_default_settings()

    first = await cascade.global_settings()
    await cascade.upsert_setting(0, "site_name", "Renamed")
    clock.now += 29
    second = await cascade.global_settings()
    assert second is first
    assert second["site_name"] == "Main Site"

    clock.now += 2
    third = await cascade.global_settings()
    assert third is not first
    assert third["site_name"] == "Renamed"


@pytest.mark.asyncio
async def test_refresh_bypasses_cache(make_plane) -> None:
    plane = await make_plane(time_source=FakeClock())
    cascade = plane.settings_cascade
    await cascade.ensure_default_settings()
    await cascade.global_settings()

    await cascade.upsert_setting(0, "site_name", "Fresh")
    assert (await cascade.refresh())["site_name"] == "Fresh"


@pytest.mark.asyncio
async def test_failed_refetch_serves_stale_settings(make_plane, monkeypatch) -> None:
    clock = FakeClock()
    plane = await make_plane(time_source=clock)
    cascade = plane.settings_cascade
    await cascade.ensure_default_settings()
    cached = await cascade.global_settings()

    async def broken(_tenant_id: int):
        raise RuntimeError("primary unreachable")

    monkeypatch.setattr(cascade, "_fetch_rows", broken)
    clock.now += 60
    assert await cascade.global_settings() == cached


def test_fold_prefers_tenant_rows_regardless_of_order() -> None:
    rows = [
        AppSetting(tenant_id=4, key="site_name", value="Four"),
        AppSetting(tenant_id=0, key="site_name", value="Global"),
        AppSetting(tenant_id=0, key="comment_cost", value="0"),
        AppSetting(tenant_id=0, key="site_logo_url", value=None),
    ]
    assert fold_settings(rows, 4) == {"site_name": "Four", "comment_cost": "0", "site_logo_url": ""}


@pytest.mark.asyncio
async def test_cached_global_settings_are_read_only(make_plane) -> None:
    plane = await make_plane(time_source=FakeClock())
    cascade = plane.settings_cascade
    await cascade.ensure_default_settings()

    first = await cascade.global_settings()
    with pytest.raises(TypeError):
        first["site_name"] = "tampered"

    second = await cascade.global_settings()
    assert second is first
    assert second["site_name"] == "Main Site"
    # Tenant 0 callers get their own copy to work with.
    merged = await cascade.tenant_settings(0)
    merged["site_name"] = "local"
    assert (await cascade.global_settings())["site_name"] == "Main Site"
