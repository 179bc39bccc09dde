from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit

import httpx

from tenantplane.core.config import Settings
from tenantplane.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


LIST_PAGE_SIZE = 100
# Stop paginating runaway listings; a single org never has this many instances.
LIST_MAX_PAGES = 50
_BODY_PREVIEW_CHARS = 500


@dataclass(frozen=True)
class ApiFailure:
    # One non-2xx (or transport) failure from the management API, kept as a value.
    phase: str
    status_code: int | None
    body: str


@dataclass(frozen=True)
class InstanceInfo:
    name: str
    hostname: str | None
    url: str | None


@dataclass(frozen=True)
class CreateOutcome:
    ok: bool
    branch_url: str | None = None
    # Which attempt produced the URL: flat | org | legacy | existing.
    via: str | None = None
    error: str | None = None
    failures: tuple[ApiFailure, ...] = ()

    @property
    def last_failure(self) -> ApiFailure | None:
        return self.failures[-1] if self.failures else None


@dataclass(frozen=True)
class DeleteOutcome:
    ok: bool
    name: str
    status_code: int | None = None
    not_found: bool = False
    error: str | None = None
    failures: tuple[ApiFailure, ...] = ()


def _first_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_branch_url(payload: Any) -> str | None:
    """Normalize the several create-response shapes into one connection URL.

    Explicit URL fields win (``connection_urls.libsql``, ``libsql_url``, ``url``);
    otherwise the URL is built from a returned host name, which may sit at the
    top level or under ``database`` with either capitalization.
    """
    if not isinstance(payload, dict):
        return None
    explicit = _first_str(
        _dig(payload, "connection_urls", "libsql"),
        payload.get("libsql_url"),
        payload.get("url"),
    )
    if explicit:
        return explicit
    host = _first_str(
        _dig(payload, "database", "Hostname"),
        payload.get("Hostname"),
        _dig(payload, "database", "hostname"),
        payload.get("hostname"),
    )
    return f"libsql://{host}" if host else None


def extract_instances(payload: Any) -> list[InstanceInfo]:
    # Listings arrive either as {"databases": [...]} or as a bare list.
    if isinstance(payload, dict):
        items = payload.get("databases")
    else:
        items = payload
    if not isinstance(items, list):
        return []
    instances: list[InstanceInfo] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = _first_str(item.get("Name"), item.get("name"))
        if not name:
            continue
        hostname = _first_str(item.get("Hostname"), item.get("hostname"))
        if hostname:
            url = f"libsql://{hostname}"
        else:
            url = _first_str(_dig(item, "connection_urls", "libsql"), item.get("libsql_url"), item.get("url"))
        instances.append(InstanceInfo(name=name, hostname=hostname, url=url))
    return instances


def find_instance_url(instances: list[InstanceInfo], name: str) -> str | None:
    for instance in instances:
        if instance.name == name and instance.url:
            return instance.url
    return None


def parse_instance_name(url: str | None, org: str | None = None) -> str | None:
    """Recover the logical instance name from a branch URL's host name.

    ``tenant-7-acme.turso.io`` with org ``acme`` gives ``tenant-7``; without a
    matching org suffix the first one or two hyphen-delimited segments of the
    first host label are used.
    """
    if not url:
        return None
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return None
    if not host:
        return None
    if org:
        marker = f"-{org.lower()}."
        if marker in host:
            return host.split(marker, 1)[0] or None
    first = host.split(".", 1)[0]
    parts = first.split("-")
    if len(parts) >= 2:
        return "-".join(parts[:2])
    return first or None


def _preview(response: httpx.Response) -> str:
    try:
        return response.text[:_BODY_PREVIEW_CHARS]
    except Exception:  # noqa: BLE001 - undecodable bodies are reported as empty
        return ""


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class HostingApiClient:
    """Bearer-authenticated client for the database hosting management API."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool((self._settings.hosting_api_token or "").strip())

    @property
    def org(self) -> str | None:
        return (self._settings.hosting_org or "").strip() or None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.hosting_api_base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {self._settings.hosting_api_token}",
                "Content-Type": "application/json",
            },
            timeout=self._settings.hosting_api_timeout_ms / 1000.0,
            transport=self._transport,
        )

    def _org_path(self, suffix: str = "") -> str:
        return f"/organizations/{quote(self.org or '', safe='')}/databases{suffix}"

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        integration: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response | ApiFailure:
        # Transport errors become failures with no status so callers can keep falling through.
        start = time.monotonic()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            increment_counter(f"hosting_api_errors_total.{integration}")
            logger.warning("hosting_api_transport_error integration=%s error=%s", integration, exc)
            return ApiFailure(phase=integration, status_code=None, body=str(exc))
        success = response.is_success or (method == "DELETE" and response.status_code == 404)
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not response.is_success:
            logger.info(
                "hosting_api_non_2xx integration=%s status=%s",
                integration,
                response.status_code,
            )
        return response

    async def _list_from(self, client: httpx.AsyncClient, path: str, integration: str) -> list[InstanceInfo]:
        instances: list[InstanceInfo] = []
        page = 1
        while page <= LIST_MAX_PAGES:
            result = await self._send(
                client,
                "GET",
                path,
                integration=integration,
                params={"page": page, "page_size": LIST_PAGE_SIZE},
            )
            if isinstance(result, ApiFailure) or not result.is_success:
                break
            payload = _json_or_none(result)
            batch = extract_instances(payload)
            instances.extend(batch)
            total_pages = _dig(payload, "pagination", "total_pages")
            if isinstance(total_pages, int) and total_pages > 0:
                if page >= total_pages:
                    break
            elif len(batch) < LIST_PAGE_SIZE:
                break
            page += 1
        return instances

    async def list_instances(self, client: httpx.AsyncClient | None = None) -> list[InstanceInfo]:
        """All instances visible to the token; organization scope first, then the flat collection."""
        if not self.configured:
            return []
        if client is None:
            async with self._client() as owned:
                return await self.list_instances(owned)
        if self.org:
            scoped = await self._list_from(client, self._org_path(), "hosting.list.org")
            if scoped:
                return scoped
        return await self._list_from(client, "/databases", "hosting.list.flat")

    async def find_instance_url(self, name: str, client: httpx.AsyncClient | None = None) -> str | None:
        return find_instance_url(await self.list_instances(client), name)

    async def create_instance(self, name: str, *, seed_from: str, region: str | None = None) -> CreateOutcome:
        if not self.configured or not name or not seed_from:
            return CreateOutcome(ok=False, error="missing-config")

        body: dict[str, Any] = {
            "name": name,
            "seed": {"type": "database", "name": seed_from},
            "group": self._settings.hosting_group,
        }
        if region:
            body["location"] = region
        legacy_body: dict[str, Any] = {"name": name}
        if region:
            legacy_body["region"] = region

        failures: list[ApiFailure] = []
        async with self._client() as client:
            outcome = await self._attempt_create(client, "POST", "/databases", body, name, via="flat", failures=failures)
            if outcome is not None:
                return outcome

            if self.org:
                outcome = await self._attempt_create(
                    client, "POST", self._org_path(), body, name, via="org", failures=failures
                )
                if outcome is not None:
                    return outcome
                existing = await self.find_instance_url(name, client)
                if existing:
                    logger.info("hosting_create_recovered_existing name=%s via=org", name)
                    return CreateOutcome(ok=True, branch_url=existing, via="existing", failures=tuple(failures))

            outcome = await self._attempt_create(
                client,
                "POST",
                f"/databases/{quote(seed_from, safe='')}/branches",
                legacy_body,
                name,
                via="legacy",
                failures=failures,
            )
            if outcome is not None:
                return outcome
            existing = await self.find_instance_url(name, client)
            if existing:
                logger.info("hosting_create_recovered_existing name=%s via=legacy", name)
                return CreateOutcome(ok=True, branch_url=existing, via="existing", failures=tuple(failures))

        last = failures[-1] if failures else None
        error = f"api-failed:{last.status_code}" if last and last.status_code else "api-unavailable"
        return CreateOutcome(ok=False, error=error, failures=tuple(failures))

    async def _attempt_create(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        body: dict[str, Any],
        name: str,
        *,
        via: str,
        failures: list[ApiFailure],
    ) -> CreateOutcome | None:
        # None means "fall through to the next endpoint shape".
        integration = f"hosting.create.{via}"
        result = await self._send(client, method, path, integration=integration, json=body)
        if isinstance(result, ApiFailure):
            failures.append(result)
            return None
        if not result.is_success:
            failures.append(ApiFailure(phase=integration, status_code=result.status_code, body=_preview(result)))
            return None
        url = extract_branch_url(_json_or_none(result))
        if not url:
            # Created but the response carried neither a URL nor a host name.
            url = await self.find_instance_url(name, client)
        if not url:
            failures.append(ApiFailure(phase=integration, status_code=result.status_code, body="missing-url"))
            return None
        return CreateOutcome(ok=True, branch_url=url, via=via, failures=tuple(failures))

    async def delete_instance(self, name: str) -> DeleteOutcome:
        """Delete by name; organization endpoint first, a 404 from either counts as success."""
        if not self.configured or not name:
            return DeleteOutcome(ok=False, name=name, error="missing-config")
        failures: list[ApiFailure] = []
        async with self._client() as client:
            paths: list[tuple[str, str]] = []
            if self.org:
                paths.append((self._org_path(f"/{quote(name, safe='')}"), "hosting.delete.org"))
            paths.append((f"/databases/{quote(name, safe='')}", "hosting.delete.flat"))
            for path, integration in paths:
                result = await self._send(client, "DELETE", path, integration=integration)
                if isinstance(result, ApiFailure):
                    failures.append(result)
                    continue
                if result.is_success or result.status_code == 404:
                    return DeleteOutcome(
                        ok=True,
                        name=name,
                        status_code=result.status_code,
                        not_found=result.status_code == 404,
                        failures=tuple(failures),
                    )
                failures.append(ApiFailure(phase=integration, status_code=result.status_code, body=_preview(result)))
        last = failures[-1] if failures else None
        return DeleteOutcome(
            ok=False,
            name=name,
            status_code=last.status_code if last else None,
            error=f"api-failed:{last.status_code}" if last and last.status_code else "api-unavailable",
            failures=tuple(failures),
        )
