from __future__ import annotations

from tenantplane.core.config import Settings
from tenantplane.core.errors import ConfigError
from tenantplane.persistence.db import DbHandle, EnginePool
from tenantplane.services.branch_locator import BranchLocator
from tenantplane.services.state import RuntimeOverrides


class DatabaseClientFactory:
    """Hands out pooled handles for the primary database or a tenant's resolved database."""

    def __init__(self, settings: Settings, pool: EnginePool, overrides: RuntimeOverrides) -> None:
        self._settings = settings
        self._pool = pool
        self.locator = BranchLocator(settings, overrides, primary=self.global_client)

    @property
    def pool(self) -> EnginePool:
        return self._pool

    def _require_config(self) -> str:
        # Missing primary config is a deployment defect, not a tenant problem; never soft-fail it.
        url = (self._settings.database_url or "").strip()
        if not url:
            raise ConfigError("DATABASE_URL is not configured")
        if not (self._settings.database_auth_token or "").strip():
            raise ConfigError("DATABASE_AUTH_TOKEN is not configured")
        return url

    async def global_client(self) -> DbHandle:
        # Mapping, settings and admin reads always go to the primary database.
        return await self._pool.get(self._require_config())

    async def client_for(self, tenant_id: int | None) -> DbHandle:
        primary_url = self._require_config()
        url = await self.locator.resolve_branch_url(tenant_id)
        return await self._pool.get(url or primary_url)

    async def client_for_url(self, url: str) -> DbHandle:
        self._require_config()
        return await self._pool.get(url)

    async def release_url(self, url: str) -> bool:
        return await self._pool.discard(url)
