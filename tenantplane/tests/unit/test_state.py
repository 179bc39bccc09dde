from __future__ import annotations

import pytest

from tenantplane.services.state import RuntimeOverrides, SchemaAppliedSet, SettingsCache


@pytest.mark.asyncio
async def test_runtime_overrides_key_by_string() -> None:
    overrides = RuntimeOverrides()
    await overrides.set(3, "libsql://three.example")

    assert overrides.get("3") == "libsql://three.example"
    assert overrides.get(3) == "libsql://three.example"
    assert overrides.snapshot() == {"3": "libsql://three.example"}
    assert await overrides.clear(3) is True
    assert await overrides.clear(3) is False


def test_schema_applied_set_forget_drops_lock() -> None:
    applied = SchemaAppliedSet()
    lock = applied.lock_for(4)
    assert applied.lock_for(4) is lock

    applied.mark(4)
    assert 4 in applied
    applied.forget(4)
    assert 4 not in applied
    assert applied.lock_for(4) is not lock


def test_settings_cache_expiry_keeps_stale_copy() -> None:
    now = {"t": 0.0}
    cache = SettingsCache(30, time_source=lambda: now["t"])
    assert cache.get() is None

    value = cache.put({"site_name": "Main Site"})
    assert cache.get() is value
    with pytest.raises(TypeError):
        value["site_name"] = "changed"
    now["t"] = 30.0
    assert cache.get() is None
    assert cache.stale() is value
    cache.clear()
    assert cache.stale() is None
