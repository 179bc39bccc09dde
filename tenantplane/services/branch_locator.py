from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Awaitable, Callable

from tenantplane.core.config import PRIMARY_TENANT_ID, Settings
from tenantplane.persistence.db import DbHandle
from tenantplane.persistence.repos.branches import get_branch
from tenantplane.services.state import RuntimeOverrides


logger = logging.getLogger(__name__)


TIER_BRANCH = "branch"
TIER_OVERRIDE = "override"
TIER_ENV = "env"
TIER_PRIMARY = "primary"


@dataclass(frozen=True)
class RouteDecision:
    # Resolved URL plus the tier it came from; url is None for the primary tier.
    tenant_id: int
    url: str | None
    tier: str


@lru_cache(maxsize=8)
def parse_fallback_map(raw: str) -> dict[str, str]:
    # Parse once per distinct config text; malformed config degrades to an empty map.
    if not raw or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        logger.warning("tenant_db_overrides_malformed error=%s", exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("tenant_db_overrides_not_an_object type=%s", type(payload).__name__)
        return {}
    return {str(key): str(value) for key, value in payload.items() if isinstance(value, str) and value.strip()}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class BranchLocator:
    """Maps a tenant id to its database URL: mapping row, then runtime override, then static config."""

    def __init__(
        self,
        settings: Settings,
        overrides: RuntimeOverrides,
        primary: Callable[[], Awaitable[DbHandle]],
    ) -> None:
        self._settings = settings
        self._overrides = overrides
        self._primary = primary

    async def resolve_branch_url(self, tenant_id: int | None) -> str | None:
        decision = await self.describe(tenant_id)
        return decision.url

    async def describe(self, tenant_id: int | None) -> RouteDecision:
        if not tenant_id:
            return RouteDecision(tenant_id=PRIMARY_TENANT_ID, url=None, tier=TIER_PRIMARY)

        url = await self._from_mapping(tenant_id)
        if url:
            return RouteDecision(tenant_id=tenant_id, url=url, tier=TIER_BRANCH)

        url = self._from_override(tenant_id)
        if url:
            return RouteDecision(tenant_id=tenant_id, url=url, tier=TIER_OVERRIDE)

        url = self._from_env(tenant_id)
        if url:
            return RouteDecision(tenant_id=tenant_id, url=url, tier=TIER_ENV)

        return RouteDecision(tenant_id=tenant_id, url=None, tier=TIER_PRIMARY)

    async def _from_mapping(self, tenant_id: int) -> str | None:
        try:
            primary = await self._primary()
            async with primary.session() as session:
                row = await get_branch(session, tenant_id)
        except Exception as exc:  # noqa: BLE001 - a failed tier falls through to the next one
            logger.warning("branch_mapping_lookup_failed tenant_id=%s error=%s", tenant_id, exc)
            return None
        return _clean(row.branch_url) if row is not None else None

    def _from_override(self, tenant_id: int) -> str | None:
        try:
            return _clean(self._overrides.get(tenant_id))
        except Exception as exc:  # noqa: BLE001
            logger.debug("runtime_override_lookup_failed tenant_id=%s error=%s", tenant_id, exc)
            return None

    def _from_env(self, tenant_id: int) -> str | None:
        try:
            return _clean(parse_fallback_map(self._settings.tenant_db_overrides).get(str(tenant_id)))
        except Exception as exc:  # noqa: BLE001
            logger.debug("env_fallback_lookup_failed tenant_id=%s error=%s", tenant_id, exc)
            return None

    async def set_override(self, tenant_id: int, url: str) -> None:
        # Operator convenience; shadowed by any persisted mapping row.
        if not tenant_id:
            raise ValueError("tenant 0 always routes to the primary database")
        cleaned = _clean(url)
        if not cleaned:
            raise ValueError("override url must not be blank")
        await self._overrides.set(tenant_id, cleaned)
        logger.info("runtime_override_set tenant_id=%s", tenant_id)

    async def clear_override(self, tenant_id: int) -> bool:
        removed = await self._overrides.clear(tenant_id)
        if removed:
            logger.info("runtime_override_cleared tenant_id=%s", tenant_id)
        return removed

    def list_overrides(self) -> dict[str, str]:
        return self._overrides.snapshot()
