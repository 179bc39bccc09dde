from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Tenant 0 is the primary/global tenant and always routes to the primary database.
PRIMARY_TENANT_ID = 0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "tenantplane"
    log_level: str = "INFO"

    # Primary database URL; required at runtime, validated by the client factory.
    database_url: str = ""
    # Credential for the primary database and every isolated tenant instance.
    database_auth_token: str = ""
    # Async SQLAlchemy dialect used for libsql:// URLs returned by the hosting API.
    branch_db_dialect: str = "sqlite+aiolibsql"
    # Bound the number of live engines kept for tenant databases.
    db_pool_max_engines: int = 32
    # Dispose engines that have not been used for this long.
    db_pool_idle_seconds: int = 600
    # Per-engine connection pool sizing for non-sqlite URLs.
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # JSON object of tenant id -> URL, lowest-priority routing fallback.
    tenant_db_overrides: str = ""

    # Management API for creating and deleting isolated database instances.
    hosting_api_base_url: str = "https://api.turso.tech/v1"
    hosting_api_token: str | None = None
    hosting_org: str | None = None
    hosting_region: str | None = None
    # Group new instances are created in.
    hosting_group: str = "default"
    # Keep each management call bounded; the whole workflow has its own timeout.
    hosting_api_timeout_ms: int = 15000
    # Logical name of the primary instance; seeds new tenants and is never deleted.
    primary_database_name: str = "primary"
    # Upper bound for create + schema + seed + mapping.
    provision_timeout_s: float = 120.0

    # Short-lived cache for global settings; writes wait out the TTL.
    settings_cache_ttl_s: int = 30

    # Operator token for /admin routes; admin routes are disabled when unset.
    admin_api_token: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
