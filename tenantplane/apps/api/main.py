from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import AsyncIterator
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.errors import (
    config_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantplane.apps.api.response import API_VERSION, is_envelope, is_versioned_request, response_meta
from tenantplane.apps.api.routes.branches_admin import router as branches_admin_router
from tenantplane.apps.api.routes.health import router as health_router
from tenantplane.apps.api.routes.ops import router as ops_router
from tenantplane.apps.api.routes.settings_admin import router as settings_admin_router
from tenantplane.apps.api.routes.tenant import router as tenant_router
from tenantplane.core.config import PRIMARY_TENANT_ID, Settings, get_settings
from tenantplane.core.errors import ConfigError
from tenantplane.core.logging import configure_logging
from tenantplane.services.plane import TenantPlane
from tenantplane.services.telemetry import record_request


logger = logging.getLogger(__name__)


_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    "/v1",
    "/docs",
    "/openapi.json",
    "/redoc",
)

_ROUTERS = (
    health_router,
    tenant_router,
    branches_admin_router,
    settings_admin_router,
    ops_router,
)


def create_app(
    settings: Settings | None = None,
    *,
    hosting_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        plane = TenantPlane(settings or get_settings(), hosting_transport=hosting_transport)
        app.state.plane = plane
        await plane.startup()
        logger.info("tenant_plane_started")
        try:
            yield
        finally:
            await plane.close()
            logger.info("tenant_plane_stopped")

    app = FastAPI(title="tenantplane", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            tenant_id=getattr(request.state, "tenant_id", PRIMARY_TENANT_ID),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response = await _wrap_envelope(request, response)
        response.headers.setdefault("X-Request-Id", request_id)
        # Unversioned aliases stay reachable but advertise /v1 as their successor.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = '</v1/docs>; rel="successor-version"'
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ConfigError, config_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    return app


async def _wrap_envelope(request: Request, response: Response) -> Response:
    # Handlers that returned a bare payload on a /v1 path still get the success envelope.
    if not is_versioned_request(request) or response.status_code >= 400:
        return response
    if response.headers.get("content-type", "").split(";")[0] != "application/json":
        return response
    body = b""
    async for chunk in response.body_iterator:
        body += chunk if isinstance(chunk, bytes) else chunk.encode()
    headers = {k: v for k, v in response.headers.items() if k.lower() not in {"content-length", "content-type"}}
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if payload is None or is_envelope(payload):
        # The body iterator is spent; hand the bytes back unchanged.
        return Response(content=body, status_code=response.status_code, headers=headers, media_type="application/json")
    return JSONResponse(
        content={"data": payload, "meta": response_meta(request)},
        status_code=response.status_code,
        headers=headers,
    )


app = create_app()
