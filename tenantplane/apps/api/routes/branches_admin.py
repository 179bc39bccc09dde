from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from tenantplane.apps.api.deps import get_plane, require_admin
from tenantplane.apps.api.openapi import ADMIN_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.persistence.db import redact_url
from tenantplane.persistence.repos.branches import list_branches
from tenantplane.services.plane import TenantPlane
from tenantplane.services.provisioning import ERROR_INVALID_TARGET, ERROR_PROTECTED, DeprovisionResult


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/branches", tags=["admin-branches"], responses=ADMIN_ERROR_RESPONSES)


class BranchMappingResponse(BaseModel):
    tenant_id: int
    branch_url: str
    source: str | None
    updated_by: str | None
    updated_at: str | None


class BranchListResponse(BaseModel):
    items: list[BranchMappingResponse]
    overrides: dict[str, str]


class RouteDecisionResponse(BaseModel):
    tenant_id: int
    url: str | None
    tier: str


class OverrideRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class OverrideClearedResponse(BaseModel):
    tenant_id: int
    removed: bool


class DeprovisionRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class ProvisionResponse(BaseModel):
    ok: bool
    tenant_id: int
    branch_url: str | None
    step: str
    error: str | None
    status_code: int | None
    details: dict[str, Any]


class DeprovisionResponse(BaseModel):
    ok: bool
    name: str | None
    error: str | None
    status_code: int | None
    details: dict[str, Any]
    mapping_removed: bool


def _deprovision_response(request: Request, result: DeprovisionResult) -> dict:
    # Protected targets are caller errors; everything else that fails came from the management API.
    if not result.ok:
        if result.error == ERROR_PROTECTED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "PROTECTED_INSTANCE", "message": "Instance may not be deprovisioned", **result.to_dict()},
            )
        if result.error == ERROR_INVALID_TARGET:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "INVALID_TARGET", "message": "Could not derive an instance name", **result.to_dict()},
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "DEPROVISION_FAILED", "message": "Deprovisioning failed", **result.to_dict()},
        )
    payload = DeprovisionResponse(**result.to_dict())
    return success_response(request=request, data=payload.model_dump())


@router.get("", response_model=SuccessEnvelope[BranchListResponse] | BranchListResponse)
async def list_branch_mappings(
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    primary = await plane.clients.global_client()
    async with primary.session() as session:
        rows = await list_branches(session)
    payload = BranchListResponse(
        items=[
            BranchMappingResponse(
                tenant_id=row.tenant_id,
                branch_url=row.branch_url,
                source=row.source,
                updated_by=row.updated_by,
                updated_at=row.updated_at,
            )
            for row in rows
        ],
        overrides=plane.locator.list_overrides(),
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/{tenant_id}", response_model=SuccessEnvelope[RouteDecisionResponse] | RouteDecisionResponse)
async def describe_branch(
    tenant_id: int,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    decision = await plane.locator.describe(tenant_id)
    payload = RouteDecisionResponse(tenant_id=decision.tenant_id, url=decision.url, tier=decision.tier)
    return success_response(request=request, data=payload.model_dump())


@router.put("/{tenant_id}/override", response_model=SuccessEnvelope[RouteDecisionResponse] | RouteDecisionResponse)
async def set_branch_override(
    tenant_id: int,
    body: OverrideRequest,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    actor: str = Depends(require_admin),
) -> dict:
    try:
        await plane.locator.set_override(tenant_id, body.url)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_OVERRIDE", "message": str(exc)},
        ) from exc
    logger.info("admin_override_set tenant_id=%s url=%s actor=%s", tenant_id, redact_url(body.url), actor)
    decision = await plane.locator.describe(tenant_id)
    payload = RouteDecisionResponse(tenant_id=decision.tenant_id, url=decision.url, tier=decision.tier)
    return success_response(request=request, data=payload.model_dump())


@router.delete(
    "/{tenant_id}/override",
    response_model=SuccessEnvelope[OverrideClearedResponse] | OverrideClearedResponse,
)
async def clear_branch_override(
    tenant_id: int,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    removed = await plane.locator.clear_override(tenant_id)
    payload = OverrideClearedResponse(tenant_id=tenant_id, removed=removed)
    return success_response(request=request, data=payload.model_dump())


@router.post("/{tenant_id}/provision", response_model=SuccessEnvelope[ProvisionResponse] | ProvisionResponse)
async def provision_branch(
    tenant_id: int,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    actor: str = Depends(require_admin),
) -> dict:
    result = await plane.provisioner.provision(tenant_id, actor=actor)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "PROVISION_FAILED", "message": "Provisioning failed", **result.to_dict()},
        )
    payload = ProvisionResponse(**result.to_dict())
    return success_response(request=request, data=payload.model_dump())


@router.post("/deprovision", response_model=SuccessEnvelope[DeprovisionResponse] | DeprovisionResponse)
async def deprovision_by_url(
    body: DeprovisionRequest,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    actor: str = Depends(require_admin),
) -> dict:
    result = await plane.deprovisioner.deprovision(body.url, actor=actor)
    return _deprovision_response(request, result)


@router.delete("/{tenant_id}", response_model=SuccessEnvelope[DeprovisionResponse] | DeprovisionResponse)
async def deprovision_tenant(
    tenant_id: int,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    actor: str = Depends(require_admin),
) -> dict:
    result = await plane.deprovisioner.deprovision(tenant_id, actor=actor)
    return _deprovision_response(request, result)
