from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_plane, get_tenant_db, get_tenant_id
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.persistence.db import DbHandle, redact_url
from tenantplane.services.plane import TenantPlane
from tenantplane.services.tenant_resolver import host_from_headers, normalize_host

router = APIRouter(tags=["tenant"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResolution(BaseModel):
    host: str
    tenant_id: int


class TenantRouteResponse(BaseModel):
    tenant_id: int
    tier: str
    url: str
    schema_ready: bool


class TenantSettingsResponse(BaseModel):
    tenant_id: int
    settings: dict[str, str]


@router.get("/tenant/resolve", response_model=SuccessEnvelope[TenantResolution] | TenantResolution)
async def resolve_tenant(
    request: Request,
    host: str | None = Query(default=None, max_length=255),
    plane: TenantPlane = Depends(get_plane),
) -> dict:
    # An explicit ?host= wins over the request's own forwarding headers.
    resolved_host = normalize_host(host) if host else host_from_headers(request.headers)
    tenant_id = await plane.resolver.resolve_tenant_id(resolved_host)
    payload = TenantResolution(host=resolved_host, tenant_id=tenant_id)
    return success_response(request=request, data=payload.model_dump())


@router.get("/settings", response_model=SuccessEnvelope[TenantSettingsResponse] | TenantSettingsResponse)
async def read_settings(
    request: Request,
    tenant_id: int = Depends(get_tenant_id),
    plane: TenantPlane = Depends(get_plane),
) -> dict:
    settings = await plane.settings_cascade.tenant_settings(tenant_id)
    payload = TenantSettingsResponse(tenant_id=tenant_id, settings=settings)
    return success_response(request=request, data=payload.model_dump())


@router.get("/tenant/route", response_model=SuccessEnvelope[TenantRouteResponse] | TenantRouteResponse)
async def describe_route(
    request: Request,
    tenant_id: int = Depends(get_tenant_id),
    handle: DbHandle = Depends(get_tenant_db),
    plane: TenantPlane = Depends(get_plane),
) -> dict:
    # Which database this request's tenant lands on, after its tables were ensured.
    decision = await plane.locator.describe(tenant_id)
    payload = TenantRouteResponse(
        tenant_id=tenant_id,
        tier=decision.tier,
        url=redact_url(handle.url),
        schema_ready=tenant_id in plane.schema_applied,
    )
    return success_response(request=request, data=payload.model_dump())
