from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import Tenant


TENANT_STATUS_ACTIVE = "active"


async def find_active_tenant_id_by_host(session: AsyncSession, host: str) -> int | None:
    # Hosts arrive lower-cased; stored domains match regardless of how they were registered.
    result = await session.execute(
        select(Tenant.id)
        .where(
            or_(func.lower(Tenant.desired_domain) == host, func.lower(Tenant.assigned_domain) == host),
            Tenant.status == TENANT_STATUS_ACTIVE,
        )
        .order_by(Tenant.id)
        .limit(1)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None
