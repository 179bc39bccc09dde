from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.core.config import PRIMARY_TENANT_ID
from tenantplane.domain.models import AppSetting


async def list_setting_rows(session: AsyncSession, tenant_id: int) -> list[AppSetting]:
    result = await session.execute(
        select(AppSetting).where(AppSetting.tenant_id == tenant_id).order_by(AppSetting.key)
    )
    return list(result.scalars().all())


async def list_cascade_rows(session: AsyncSession, tenant_id: int) -> list[AppSetting]:
    # One query over the composite key covering the tenant and the global rows.
    result = await session.execute(
        select(AppSetting).where(AppSetting.tenant_id.in_((tenant_id, PRIMARY_TENANT_ID)))
    )
    return list(result.scalars().all())


async def get_setting(session: AsyncSession, tenant_id: int, key: str) -> AppSetting | None:
    result = await session.execute(
        select(AppSetting).where(AppSetting.tenant_id == tenant_id, AppSetting.key == key)
    )
    return result.scalar_one_or_none()


async def delete_setting(session: AsyncSession, tenant_id: int, key: str) -> int:
    result = await session.execute(
        delete(AppSetting).where(AppSetting.tenant_id == tenant_id, AppSetting.key == key)
    )
    return int(result.rowcount or 0)
