from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from tenantplane.apps.api.deps import get_plane, require_admin
from tenantplane.apps.api.openapi import ADMIN_ERROR_RESPONSES
from tenantplane.apps.api.response import success_response
from tenantplane.services.plane import TenantPlane
from tenantplane.services.telemetry import counters_snapshot, external_call_stats, request_stats

router = APIRouter(prefix="/admin", tags=["admin-ops"], responses=ADMIN_ERROR_RESPONSES)


@router.get("/telemetry")
async def telemetry_summary(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    plane: TenantPlane = Depends(get_plane),
    _actor: str = Depends(require_admin),
) -> dict:
    # In-process numbers only; each worker reports its own window.
    payload = {
        "window_s": window_s,
        "requests": request_stats(window_s),
        "external_calls": external_call_stats(window_s),
        "counters": counters_snapshot(),
        "engines": len(plane.pool),
        "overrides": len(plane.locator.list_overrides()),
    }
    return success_response(request=request, data=payload)
