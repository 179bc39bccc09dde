from __future__ import annotations

import logging
from typing import Callable

import httpx

from tenantplane.core.config import Settings
from tenantplane.domain.models import Base
from tenantplane.persistence.clients import DatabaseClientFactory
from tenantplane.persistence.db import EnginePool
from tenantplane.services.branch_locator import BranchLocator
from tenantplane.services.hosting_api import HostingApiClient
from tenantplane.services.provisioning import DeprovisioningOrchestrator, ProvisioningOrchestrator
from tenantplane.services.schema import SchemaProvisioner
from tenantplane.services.settings_cascade import SettingsCascade
from tenantplane.services.state import RuntimeOverrides, SchemaAppliedSet, SettingsCache
from tenantplane.services.tenant_resolver import TenantResolver


logger = logging.getLogger(__name__)


class TenantPlane:
    """Process-wide owner of the engine pool and the routing/settings/provisioning services."""

    def __init__(
        self,
        settings: Settings,
        *,
        hosting_transport: httpx.AsyncBaseTransport | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.pool = EnginePool(
            auth_token=settings.database_auth_token,
            branch_dialect=settings.branch_db_dialect,
            max_engines=settings.db_pool_max_engines,
            idle_seconds=settings.db_pool_idle_seconds,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            time_source=time_source,
        )
        self.overrides = RuntimeOverrides()
        self.schema_applied = SchemaAppliedSet()
        self.settings_cache = SettingsCache(settings.settings_cache_ttl_s, time_source=time_source)

        self.clients = DatabaseClientFactory(settings, self.pool, self.overrides)
        self.resolver = TenantResolver(self.clients)
        self.schema = SchemaProvisioner(self.clients, self.schema_applied)
        self.settings_cascade = SettingsCascade(self.clients, self.settings_cache)
        self.hosting = HostingApiClient(settings, transport=hosting_transport)
        self.provisioner = ProvisioningOrchestrator(settings, self.clients, self.schema, self.hosting)
        self.deprovisioner = DeprovisioningOrchestrator(settings, self.clients, self.schema, self.hosting)

    @property
    def locator(self) -> BranchLocator:
        return self.clients.locator

    async def init_control_tables(self) -> None:
        # Mapping, tenant and settings tables live on the primary database only.
        primary = await self.clients.global_client()
        async with primary.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("control_tables_ready")

    async def startup(self) -> None:
        # Seeding is best effort; an unreachable primary must not keep the app from starting.
        try:
            await self.init_control_tables()
            await self.settings_cascade.ensure_default_settings()
        except Exception as exc:  # noqa: BLE001
            logger.warning("startup_seed_failed error=%s", exc)

    async def close(self) -> None:
        await self.pool.close()
