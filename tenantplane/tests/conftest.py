from __future__ import annotations

from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx
import pytest

from tenantplane.core.config import Settings, get_settings
from tenantplane.persistence import db as db_module
from tenantplane.services.branch_locator import parse_fallback_map
from tenantplane.services.plane import TenantPlane
from tenantplane.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Module-level caches and telemetry must not leak between tests.
    get_settings.cache_clear()
    parse_fallback_map.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    parse_fallback_map.cache_clear()
    reset_telemetry()


@pytest.fixture
def sqlite_url(tmp_path) -> Callable[[str], str]:
    def _url(name: str) -> str:
        return f"sqlite+aiosqlite:///{tmp_path / name}.db"

    return _url


@pytest.fixture
def settings(sqlite_url) -> Settings:
    return Settings(
        _env_file=None,
        database_url=sqlite_url("primary"),
        database_auth_token="test-db-token",
        hosting_api_base_url="https://hosting.test/v1",
        hosting_api_token="test-hosting-token",
        hosting_org=None,
        hosting_region=None,
        primary_database_name="primary",
        admin_api_token="admin-secret",
        tenant_db_overrides="",
    )


@pytest.fixture
def libsql_as_sqlite(monkeypatch, tmp_path) -> None:
    # Route libsql:// instance URLs to local sqlite files named after the host.
    original = db_module.to_sqlalchemy_url

    def _local(url: str, *, branch_dialect: str) -> str:
        parts = urlsplit(url)
        if parts.scheme in ("libsql", "https", "wss"):
            return f"sqlite+aiosqlite:///{tmp_path / (parts.hostname or 'unknown')}.db"
        return original(url, branch_dialect=branch_dialect)

    monkeypatch.setattr(db_module, "to_sqlalchemy_url", _local)


@pytest.fixture
async def make_plane(settings) -> Callable[..., Awaitable[TenantPlane]]:
    planes: list[TenantPlane] = []

    async def _make(
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        time_source: Callable[[], float] | None = None,
        init: bool = True,
        **overrides: Any,
    ) -> TenantPlane:
        plane_settings = settings.model_copy(update=overrides) if overrides else settings
        plane = TenantPlane(plane_settings, hosting_transport=transport, time_source=time_source)
        planes.append(plane)
        if init:
            await plane.init_control_tables()
        return plane

    yield _make
    for plane in planes:
        await plane.close()
