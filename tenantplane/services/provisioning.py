from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from tenantplane.core.config import PRIMARY_TENANT_ID, Settings
from tenantplane.persistence.clients import DatabaseClientFactory
from tenantplane.persistence.db import DbHandle, redact_url
from tenantplane.persistence.repos.branches import (
    delete_branch,
    delete_branches_by_url,
    get_branch,
    upsert_branch,
)
from tenantplane.services.hosting_api import HostingApiClient, parse_instance_name
from tenantplane.services.schema import SchemaProvisioner
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


STEP_CREATE = "create-branch"
STEP_SCHEMA = "schema"
STEP_SEED = "seed"
STEP_MAPPING = "mapping"

ERROR_INVALID_TENANT = "invalid-tenant"
ERROR_MISSING_CONFIG = "missing-config"
ERROR_TIMEOUT = "timeout"
ERROR_PROTECTED = "protected-instance"
ERROR_INVALID_TARGET = "invalid-target"

DEMO_PROFILE_ID = "demo-user"
ANNOUNCEMENT_PAGE = "home"
ANNOUNCEMENT_SECTION = "announcement"


def instance_name(tenant_id: int) -> str:
    return f"tenant-{tenant_id}"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProvisionResult:
    ok: bool
    tenant_id: int
    branch_url: str | None = None
    # Last step reached; on failure, the step that failed.
    step: str = STEP_CREATE
    error: str | None = None
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DeprovisionResult:
    ok: bool
    name: str | None = None
    error: str | None = None
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    mapping_removed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProvisioningOrchestrator:
    """Create an isolated instance for a tenant, bootstrap and seed it, then record the mapping.

    Every stage is idempotent, so re-running a failed or timed-out provision is
    the recovery path. Results are always returned, never raised.
    """

    def __init__(
        self,
        settings: Settings,
        clients: DatabaseClientFactory,
        schema: SchemaProvisioner,
        hosting: HostingApiClient,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._schema = schema
        self._hosting = hosting

    async def provision(self, tenant_id: int, actor: str | None = None) -> ProvisionResult:
        if not tenant_id or tenant_id < 0:
            return ProvisionResult(ok=False, tenant_id=tenant_id, step=STEP_CREATE, error=ERROR_INVALID_TENANT)
        if not self._hosting.configured:
            return ProvisionResult(ok=False, tenant_id=tenant_id, step=STEP_CREATE, error=ERROR_MISSING_CONFIG)

        result = ProvisionResult(ok=False, tenant_id=tenant_id)
        logger.info("provision_started tenant_id=%s actor=%s", tenant_id, actor)
        try:
            await asyncio.wait_for(self._run(tenant_id, actor, result), timeout=self._settings.provision_timeout_s)
        except asyncio.TimeoutError:
            # result.step still names the stage that was in flight.
            result.ok = False
            result.error = ERROR_TIMEOUT
            increment_counter("provision_timeouts_total")
            logger.warning("provision_timed_out tenant_id=%s step=%s", tenant_id, result.step)
        except Exception as exc:  # noqa: BLE001 - provisioning reports failures as results
            result.ok = False
            result.error = result.error or str(exc) or type(exc).__name__
            logger.exception("provision_failed tenant_id=%s step=%s", tenant_id, result.step)
        increment_counter("provision_ok_total" if result.ok else "provision_failed_total")
        return result

    async def _run(self, tenant_id: int, actor: str | None, result: ProvisionResult) -> None:
        name = instance_name(tenant_id)

        result.step = STEP_CREATE
        outcome = await self._hosting.create_instance(
            name,
            seed_from=self._settings.primary_database_name,
            region=self._settings.hosting_region,
        )
        if not outcome.ok or not outcome.branch_url:
            last = outcome.last_failure
            result.error = outcome.error or "create-failed"
            result.status_code = last.status_code if last else None
            result.details = {"failures": [asdict(failure) for failure in outcome.failures]}
            logger.warning(
                "provision_create_failed tenant_id=%s error=%s status=%s",
                tenant_id,
                result.error,
                result.status_code,
            )
            return
        result.branch_url = outcome.branch_url
        result.details["created_via"] = outcome.via
        logger.info("provision_instance_ready tenant_id=%s name=%s via=%s", tenant_id, name, outcome.via)

        result.step = STEP_SCHEMA
        try:
            handle = await self._clients.client_for_url(outcome.branch_url)
            await handle.execute("SELECT 1")
        except Exception as exc:  # noqa: BLE001
            result.error = f"connect-failed: {exc}"
            logger.warning(
                "provision_connect_failed tenant_id=%s url=%s error=%s",
                tenant_id,
                redact_url(outcome.branch_url),
                exc,
            )
            return
        report = await self._schema.bootstrap(handle)
        result.details["schema"] = {
            "applied": report.applied,
            "ignored": report.ignored,
            "failed": list(report.failed),
        }

        result.step = STEP_SEED
        try:
            result.details["seeded"] = await seed_instance(handle, tenant_id)
        except Exception as exc:  # noqa: BLE001
            result.error = f"seed-failed: {exc}"
            logger.warning("provision_seed_failed tenant_id=%s error=%s", tenant_id, exc)
            return

        result.step = STEP_MAPPING
        try:
            primary = await self._clients.global_client()
            async with primary.session() as session:
                await upsert_branch(
                    session,
                    tenant_id=tenant_id,
                    branch_url=outcome.branch_url,
                    source="provision",
                    updated_by=actor,
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            result.error = f"mapping-failed: {exc}"
            logger.warning("provision_mapping_failed tenant_id=%s error=%s", tenant_id, exc)
            return

        # The tenant now routes to a fresh database; let the next request re-check its schema.
        self._schema.forget(tenant_id)
        result.ok = True
        result.error = None
        logger.info("provision_completed tenant_id=%s actor=%s", tenant_id, actor)


async def seed_instance(handle: DbHandle, tenant_id: int) -> dict[str, bool]:
    """Insert the demo profile, welcome post and announcement; rows already present are left alone.

    Each row is written by one conditional statement, so overlapping provisions of the
    same tenant seed it once and neither run fails on a duplicate.
    """
    now = _utc_now_iso()
    profile = await handle.execute_write(
        "INSERT INTO profiles (id, username, tenant_id, points, created_at) "
        "VALUES (:id, :username, :tenant_id, :points, :created_at) "
        "ON CONFLICT (id) DO NOTHING",
        {
            "id": DEMO_PROFILE_ID,
            "username": "Demo User",
            "tenant_id": tenant_id,
            "points": 100,
            "created_at": now,
        },
    )
    post = await handle.execute_write(
        "INSERT INTO posts (tenant_id, author_id, content, status, created_at, updated_at) "
        "SELECT :tenant_id, :author_id, :content, 'approved', :created_at, :created_at "
        "WHERE NOT EXISTS (SELECT 1 FROM posts WHERE tenant_id = :tenant_id AND author_id = :author_id)",
        {
            "tenant_id": tenant_id,
            "author_id": DEMO_PROFILE_ID,
            "content": "Welcome to your new site!",
            "created_at": now,
        },
    )
    announcement = await handle.execute_write(
        "INSERT INTO page_content (tenant_id, page, section, position, content) "
        "SELECT :tenant_id, :page, :section, 0, :content "
        "WHERE NOT EXISTS (SELECT 1 FROM page_content WHERE tenant_id = :tenant_id AND section = :section)",
        {
            "tenant_id": tenant_id,
            "page": ANNOUNCEMENT_PAGE,
            "section": ANNOUNCEMENT_SECTION,
            "content": "Your site is ready.",
        },
    )
    return {"profile": profile > 0, "post": post > 0, "announcement": announcement > 0}


class DeprovisioningOrchestrator:
    """Delete a tenant's isolated instance and drop every piece of routing state pointing at it."""

    def __init__(
        self,
        settings: Settings,
        clients: DatabaseClientFactory,
        schema: SchemaProvisioner,
        hosting: HostingApiClient,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._schema = schema
        self._hosting = hosting

    def _is_protected(self, name: str | None) -> bool:
        protected = (self._settings.primary_database_name or "").strip().lower()
        return bool(protected) and (name or "").strip().lower() == protected

    async def _mapped_url(self, tenant_id: int) -> str | None:
        try:
            primary = await self._clients.global_client()
            async with primary.session() as session:
                row = await get_branch(session, tenant_id)
        except Exception as exc:  # noqa: BLE001 - fall back to the conventional instance name
            logger.warning("deprovision_mapping_lookup_failed tenant_id=%s error=%s", tenant_id, exc)
            return None
        return row.branch_url if row is not None else None

    async def deprovision(self, target: int | str, actor: str | None = None) -> DeprovisionResult:
        tenant_id: int | None = None
        url: str | None = None
        if isinstance(target, int):
            tenant_id = target
            if tenant_id == PRIMARY_TENANT_ID:
                return DeprovisionResult(ok=False, error=ERROR_PROTECTED, details={"tenant_id": tenant_id})
            url = await self._mapped_url(tenant_id)
            name = parse_instance_name(url, self._hosting.org) if url else instance_name(tenant_id)
        else:
            url = (target or "").strip() or None
            name = parse_instance_name(url, self._hosting.org)

        if not name:
            return DeprovisionResult(ok=False, error=ERROR_INVALID_TARGET, details={"target": str(target)})
        if self._is_protected(name):
            logger.warning("deprovision_rejected_protected name=%s actor=%s", name, actor)
            return DeprovisionResult(ok=False, name=name, error=ERROR_PROTECTED)

        outcome = await self._hosting.delete_instance(name)
        if not outcome.ok:
            logger.warning(
                "deprovision_failed name=%s error=%s status=%s",
                name,
                outcome.error,
                outcome.status_code,
            )
            return DeprovisionResult(
                ok=False,
                name=name,
                error=outcome.error,
                status_code=outcome.status_code,
                details={"failures": [asdict(failure) for failure in outcome.failures]},
            )

        result = DeprovisionResult(
            ok=True,
            name=name,
            status_code=outcome.status_code,
            details={"not_found": outcome.not_found},
        )
        await self._drop_routing_state(result, tenant_id=tenant_id, url=url)
        logger.info(
            "deprovision_completed name=%s tenant_id=%s mapping_removed=%s actor=%s",
            name,
            tenant_id,
            result.mapping_removed,
            actor,
        )
        return result

    async def _drop_routing_state(self, result: DeprovisionResult, *, tenant_id: int | None, url: str | None) -> None:
        # The instance is gone; stale routing state is cleaned best-effort and reported in details.
        tenant_ids: list[int] = [tenant_id] if tenant_id else []
        try:
            primary = await self._clients.global_client()
            async with primary.session() as session:
                if tenant_id:
                    removed = await delete_branch(session, tenant_id)
                    result.mapping_removed = removed > 0
                elif url:
                    tenant_ids = await delete_branches_by_url(session, url)
                    result.mapping_removed = bool(tenant_ids)
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            result.details["mapping_error"] = str(exc)
            logger.warning("deprovision_mapping_cleanup_failed name=%s error=%s", result.name, exc)

        locator = self._clients.locator
        if url:
            for key, override_url in locator.list_overrides().items():
                if override_url == url and key.isdigit():
                    tenant_ids.append(int(key))
        for affected in set(tenant_ids):
            await locator.clear_override(affected)
            self._schema.forget(affected)
        result.details["tenant_ids"] = sorted(set(tenant_ids))
        if url:
            await self._clients.release_url(url)
