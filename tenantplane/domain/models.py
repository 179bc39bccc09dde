from __future__ import annotations

from sqlalchemy import Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenant_requests"

    # Created by the out-of-band tenant request workflow; read-only to routing.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Host the sub-site is served from; resolution matches it case-insensitively.
    desired_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    # Platform-assigned host, also accepted for resolution.
    assigned_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending | active | rejected; only active tenants resolve.
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str | None] = mapped_column(String, nullable=True)


# Resolution compares lower(domain), so the lookup indexes are on the same expression.
Index("ix_tenant_requests_desired_domain_lower", func.lower(Tenant.desired_domain))
Index("ix_tenant_requests_assigned_domain_lower", func.lower(Tenant.assigned_domain))


class BranchMapping(Base):
    __tablename__ = "branches"

    # One row per provisioned tenant; tenant 0 is never stored here.
    tenant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    branch_url: Mapped[str] = mapped_column(String, nullable=False)
    # Where the mapping came from (provision, admin, import).
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # ISO-8601 UTC string so the table stays portable across engines.
    updated_at: Mapped[str | None] = mapped_column(String, nullable=True)


class AppSetting(Base):
    __tablename__ = "app_settings"

    # Global rows use tenant_id 0; tenant rows override them per key.
    tenant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
