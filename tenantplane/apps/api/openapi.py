from __future__ import annotations

from typing import Any

from tenantplane.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Configuration or internal error", "CONFIG_ERROR", "DATABASE_URL is not configured"),
}

ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    502: _response(
        "Management API failure",
        "PROVISION_FAILED",
        "Provisioning failed",
        details={"step": "create-branch", "error": "api-failed:500"},
    ),
    503: _response("Admin API disabled", "ADMIN_DISABLED", "ADMIN_API_TOKEN is not configured"),
}
