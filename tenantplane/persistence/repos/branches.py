from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import BranchMapping


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_branch(session: AsyncSession, tenant_id: int) -> BranchMapping | None:
    # Primary-key point lookup; this sits on the hot routing path.
    result = await session.execute(select(BranchMapping).where(BranchMapping.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def list_branches(session: AsyncSession) -> list[BranchMapping]:
    result = await session.execute(select(BranchMapping).order_by(BranchMapping.tenant_id))
    return list(result.scalars().all())


async def upsert_branch(
    session: AsyncSession,
    *,
    tenant_id: int,
    branch_url: str,
    source: str,
    updated_by: str | None,
) -> BranchMapping:
    # Single-statement upsert so overlapping provisions of one tenant never collide on the key.
    values = {
        "tenant_id": tenant_id,
        "branch_url": branch_url,
        "source": source,
        "updated_by": updated_by,
        "updated_at": _utc_now_iso(),
    }
    insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(BranchMapping).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[BranchMapping.tenant_id],
        set_={key: value for key, value in values.items() if key != "tenant_id"},
    )
    await session.execute(stmt)
    # Drop any stale identity-map copy so the reload sees the row just written.
    result = await session.execute(
        select(BranchMapping)
        .where(BranchMapping.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def delete_branch(session: AsyncSession, tenant_id: int) -> int:
    result = await session.execute(delete(BranchMapping).where(BranchMapping.tenant_id == tenant_id))
    return int(result.rowcount or 0)


async def delete_branches_by_url(session: AsyncSession, branch_url: str) -> list[int]:
    # Return the tenant ids whose mapping pointed at the URL so callers can drop derived state.
    result = await session.execute(
        select(BranchMapping.tenant_id).where(BranchMapping.branch_url == branch_url)
    )
    tenant_ids = [int(value) for value in result.scalars().all()]
    if tenant_ids:
        await session.execute(delete(BranchMapping).where(BranchMapping.branch_url == branch_url))
    return tenant_ids
