from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from tenantplane.persistence.db import DbHandle
from tenantplane.services.plane import TenantPlane
from tenantplane.services.tenant_resolver import host_from_headers


def get_plane(request: Request) -> TenantPlane:
    # Built once in the lifespan handler and shared by every request.
    plane = getattr(request.app.state, "plane", None)
    if plane is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Tenant plane is not initialised"},
        )
    return plane


async def get_tenant_id(request: Request, plane: TenantPlane = Depends(get_plane)) -> int:
    # Resolve once per request; the middleware reads request.state.tenant_id for telemetry.
    cached = getattr(request.state, "tenant_id", None)
    if cached is not None:
        return cached
    tenant_id = await plane.resolver.resolve_tenant_id(host_from_headers(request.headers))
    request.state.tenant_id = tenant_id
    return tenant_id


async def get_tenant_db(
    tenant_id: int = Depends(get_tenant_id),
    plane: TenantPlane = Depends(get_plane),
) -> DbHandle:
    # Handlers always receive a handle whose tenant tables exist.
    await plane.schema.ensure_tenant_schema(tenant_id)
    return await plane.clients.client_for(tenant_id)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def require_admin(
    plane: TenantPlane = Depends(get_plane),
    authorization: str | None = Header(default=None),
    x_actor: str | None = Header(default=None, alias="X-Actor", max_length=128),
) -> str:
    """Gate operator endpoints behind ADMIN_API_TOKEN and return the acting operator name."""
    expected = (plane.settings.admin_api_token or "").strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_DISABLED", "message": "ADMIN_API_TOKEN is not configured"},
        )
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        raise _auth_error("Missing or invalid bearer token")
    return (x_actor or "").strip() or "admin"
