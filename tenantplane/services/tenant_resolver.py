from __future__ import annotations

import logging
from typing import Mapping

from tenantplane.core.config import PRIMARY_TENANT_ID
from tenantplane.persistence.clients import DatabaseClientFactory
from tenantplane.persistence.repos.tenants import find_active_tenant_id_by_host


logger = logging.getLogger(__name__)


def normalize_host(value: str | None) -> str:
    # Bare, lower-cased host name; strips the port including bracketed IPv6 forms.
    host = (value or "").strip().lower()
    if not host:
        return ""
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end > 0 else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def host_from_headers(headers: Mapping[str, str]) -> str:
    # The edge proxy puts the true origin first in X-Forwarded-Host.
    forwarded = headers.get("x-forwarded-host") or ""
    first = forwarded.split(",")[0] if forwarded else ""
    return normalize_host(first or headers.get("host"))


class TenantResolver:
    """Host name -> tenant id via the primary database; anything unknown is tenant 0."""

    def __init__(self, clients: DatabaseClientFactory) -> None:
        self._clients = clients

    async def resolve_tenant_id(self, host: str | None) -> int:
        host = normalize_host(host)
        if not host:
            return PRIMARY_TENANT_ID
        try:
            primary = await self._clients.global_client()
            async with primary.session() as session:
                tenant_id = await find_active_tenant_id_by_host(session, host)
        except Exception as exc:  # noqa: BLE001 - unavailable infrastructure still serves the default tenant
            logger.warning("tenant_resolve_failed host=%s error=%s", host, exc)
            return PRIMARY_TENANT_ID
        return tenant_id if tenant_id is not None else PRIMARY_TENANT_ID
