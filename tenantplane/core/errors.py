from __future__ import annotations


class TenantPlaneError(Exception):
    """Base error for tenantplane."""


class ConfigError(TenantPlaneError):
    """Missing deployment configuration (primary URL or credential)."""


class InvalidIdentifierError(TenantPlaneError):
    """Table or column name rejected before being interpolated into DDL."""
