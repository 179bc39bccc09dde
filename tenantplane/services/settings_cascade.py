from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from tenantplane.core.config import PRIMARY_TENANT_ID
from tenantplane.core.errors import ConfigError
from tenantplane.domain.models import AppSetting
from tenantplane.persistence.clients import DatabaseClientFactory
from tenantplane.persistence.repos import settings as settings_repo
from tenantplane.services.state import SettingsCache


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingDefault:
    key: str
    value: str
    name: str
    description: str
    type: str


# Seeded into the global (tenant 0) rows; tenants override individual keys.
DEFAULT_SETTINGS: tuple[SettingDefault, ...] = (
    SettingDefault("site_name", "Main Site", "Site name", "Name shown in page titles and navigation", "text"),
    SettingDefault("site_logo_url", "", "Site logo", "Logo image URL shown in the header", "text"),
    SettingDefault("social_forum_mode", "shared", "Forum mode", "Whether the social feed is shared or tenant-only", "text"),
    SettingDefault("new_user_points", "100", "New user points", "Points granted to newly registered users", "number"),
    SettingDefault("new_user_free_ads", "1", "New user free ads", "Free ad posts granted to new users", "number"),
    SettingDefault("ad_post_cost", "10", "Ad post cost", "Points charged for publishing an ad post", "number"),
    SettingDefault("social_post_cost", "0", "Social post cost", "Points charged for publishing a social post", "number"),
    SettingDefault("comment_cost", "0", "Comment cost", "Points charged for each comment", "number"),
    SettingDefault("daily_login_reward", "5", "Daily login reward", "Points granted on the first login of a day", "number"),
    SettingDefault("invite_reward_points", "20", "Invite reward", "Points granted to the inviter per registration", "number"),
    SettingDefault("carousel_overlay_opacity", "0.5", "Carousel overlay", "Opacity of the homepage carousel overlay", "number"),
    SettingDefault(
        "iframe_content_obfuscation_enabled",
        "false",
        "iFrame obfuscation",
        "Obfuscate embedded iFrame content",
        "boolean",
    ),
    SettingDefault("iframe_obfuscation_key", "", "iFrame obfuscation key", "Key used for iFrame content obfuscation", "text"),
)


def _blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def fold_settings(rows: list[AppSetting], tenant_id: int) -> dict[str, str]:
    # Tenant rows always win; a global row only fills a key nobody has set yet.
    merged: dict[str, str] = {}
    for row in rows:
        value = row.value if row.value is not None else ""
        if row.tenant_id == tenant_id:
            merged[row.key] = value
        elif row.key not in merged:
            merged[row.key] = value
    return merged


class SettingsCascade:
    """Tenant configuration layered over global defaults, with a short-lived global cache."""

    def __init__(self, clients: DatabaseClientFactory, cache: SettingsCache) -> None:
        self._clients = clients
        self._cache = cache

    async def global_settings(self) -> Mapping[str, str]:
        cached = self._cache.get()
        if cached is not None:
            return cached
        async with self._cache.lock:
            cached = self._cache.get()
            if cached is not None:
                return cached
            try:
                rows = await self._fetch_rows(PRIMARY_TENANT_ID)
            except ConfigError:
                raise
            except Exception as exc:  # noqa: BLE001 - serve stale or empty settings over failing the request
                logger.warning("global_settings_fetch_failed error=%s", exc)
                return self._cache.stale() or MappingProxyType({})
            return self._cache.put({row.key: row.value if row.value is not None else "" for row in rows})

    async def refresh(self) -> Mapping[str, str]:
        self._cache.clear()
        return await self.global_settings()

    async def tenant_settings(self, tenant_id: int) -> dict[str, str]:
        if not tenant_id:
            return dict(await self.global_settings())
        try:
            primary = await self._clients.global_client()
            async with primary.session() as session:
                rows = await settings_repo.list_cascade_rows(session, tenant_id)
        except ConfigError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("tenant_settings_fetch_failed tenant_id=%s error=%s", tenant_id, exc)
            return dict(await self.global_settings())
        return fold_settings(rows, tenant_id)

    async def _fetch_rows(self, tenant_id: int) -> list[AppSetting]:
        primary = await self._clients.global_client()
        async with primary.session() as session:
            return await settings_repo.list_setting_rows(session, tenant_id)

    async def list_setting_rows(self, tenant_id: int) -> list[AppSetting]:
        return await self._fetch_rows(tenant_id)

    async def ensure_default_settings(self) -> int:
        """Insert missing catalog keys and backfill blank metadata without touching set values.

        Returns the number of rows inserted or updated; zero on every run after the first.
        """
        touched = 0
        primary = await self._clients.global_client()
        async with primary.session() as session:
            for default in DEFAULT_SETTINGS:
                row = await settings_repo.get_setting(session, PRIMARY_TENANT_ID, default.key)
                if row is None:
                    session.add(
                        AppSetting(
                            tenant_id=PRIMARY_TENANT_ID,
                            key=default.key,
                            value=default.value,
                            name=default.name,
                            description=default.description,
                            type=default.type,
                        )
                    )
                    touched += 1
                    continue
                changed = False
                if _blank(row.value) and default.value:
                    row.value = default.value
                    changed = True
                if _blank(row.name):
                    row.name = default.name
                    changed = True
                if _blank(row.description):
                    row.description = default.description
                    changed = True
                if _blank(row.type):
                    row.type = default.type
                    changed = True
                if changed:
                    touched += 1
            await session.commit()
        if touched:
            logger.info("default_settings_seeded touched=%s", touched)
        return touched

    async def upsert_setting(
        self,
        tenant_id: int,
        key: str,
        value: str,
        *,
        name: str | None = None,
        description: str | None = None,
        type: str | None = None,
    ) -> AppSetting:
        # Writes do not invalidate the global cache; readers see them after the TTL or a refresh.
        primary = await self._clients.global_client()
        async with primary.session() as session:
            row = await settings_repo.get_setting(session, tenant_id, key)
            if row is None:
                row = AppSetting(tenant_id=tenant_id, key=key)
                session.add(row)
            row.value = value
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            if type is not None:
                row.type = type
            await session.commit()
            return row

    async def delete_setting(self, tenant_id: int, key: str) -> bool:
        primary = await self._clients.global_client()
        async with primary.session() as session:
            deleted = await settings_repo.delete_setting(session, tenant_id, key)
            await session.commit()
        return deleted > 0
