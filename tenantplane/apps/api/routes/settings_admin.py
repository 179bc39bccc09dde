from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Request, status
from pydantic import BaseModel, Field

from tenantplane.apps.api.deps import get_plane, require_admin
from tenantplane.apps.api.openapi import ADMIN_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.domain.models import AppSetting
from tenantplane.services.plane import TenantPlane

router = APIRouter(prefix="/admin/settings", tags=["admin-settings"], responses=ADMIN_ERROR_RESPONSES)

_KEY_PATTERN = r"^[A-Za-z0-9_.-]+$"


class SettingRow(BaseModel):
    tenant_id: int
    key: str
    value: str | None
    name: str | None
    description: str | None
    type: str | None


class SettingRowsResponse(BaseModel):
    tenant_id: int
    items: list[SettingRow]
    effective: dict[str, str]


class SettingUpsertRequest(BaseModel):
    value: str = Field(max_length=10000)
    name: str | None = Field(default=None, max_length=256)
    description: str | None = Field(default=None, max_length=2048)
    type: str | None = Field(default=None, max_length=32)


class SettingDeletedResponse(BaseModel):
    tenant_id: int
    key: str
    deleted: bool


class DefaultsSeededResponse(BaseModel):
    touched: int


class GlobalSettingsResponse(BaseModel):
    settings: dict[str, str]


def _row(row: AppSetting) -> SettingRow:
    return SettingRow(
        tenant_id=row.tenant_id,
        key=row.key,
        value=row.value,
        name=row.name,
        description=row.description,
        type=row.type,
    )


@router.post("/defaults", response_model=SuccessEnvelope[DefaultsSeededResponse] | DefaultsSeededResponse)
async def seed_default_settings(
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    touched = await plane.settings_cascade.ensure_default_settings()
    return success_response(request=request, data=DefaultsSeededResponse(touched=touched).model_dump())


@router.post("/refresh", response_model=SuccessEnvelope[GlobalSettingsResponse] | GlobalSettingsResponse)
async def refresh_global_settings(
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    settings = await plane.settings_cascade.refresh()
    return success_response(request=request, data=GlobalSettingsResponse(settings=dict(settings)).model_dump())


@router.get("/{tenant_id}", response_model=SuccessEnvelope[SettingRowsResponse] | SettingRowsResponse)
async def list_tenant_settings(
    tenant_id: int,
    request: Request,
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    # Raw rows stored for the tenant plus the merged view handlers would see.
    rows = await plane.settings_cascade.list_setting_rows(tenant_id)
    effective = await plane.settings_cascade.tenant_settings(tenant_id)
    payload = SettingRowsResponse(tenant_id=tenant_id, items=[_row(row) for row in rows], effective=effective)
    return success_response(request=request, data=payload.model_dump())


@router.put("/{tenant_id}/{key}", response_model=SuccessEnvelope[SettingRow] | SettingRow)
async def upsert_tenant_setting(
    tenant_id: int,
    body: SettingUpsertRequest,
    request: Request,
    key: str = Path(min_length=1, max_length=128, pattern=_KEY_PATTERN),
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    row = await plane.settings_cascade.upsert_setting(
        tenant_id,
        key,
        body.value,
        name=body.name,
        description=body.description,
        type=body.type,
    )
    return success_response(request=request, data=_row(row).model_dump())


@router.delete("/{tenant_id}/{key}", response_model=SuccessEnvelope[SettingDeletedResponse] | SettingDeletedResponse)
async def delete_tenant_setting(
    tenant_id: int,
    request: Request,
    key: str = Path(min_length=1, max_length=128, pattern=_KEY_PATTERN),
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    deleted = await plane.settings_cascade.delete_setting(tenant_id, key)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Setting not found", "tenant_id": tenant_id, "key": key},
        )
    payload = SettingDeletedResponse(tenant_id=tenant_id, key=key, deleted=True)
    return success_response(request=request, data=payload.model_dump())
