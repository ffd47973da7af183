from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import HistoryEntry
from tenantdesk.persistence.guards import workspace_predicate


async def list_entity_history(
    session: AsyncSession,
    *,
    workspace_id: str,
    entity_type: str,
    entity_id: str,
) -> list[HistoryEntry]:
    # History reads are always scoped to the owning workspace.
    result = await session.execute(
        select(HistoryEntry)
        .where(
            workspace_predicate(HistoryEntry, workspace_id),
            HistoryEntry.entity_type == entity_type,
            HistoryEntry.entity_id == entity_id,
        )
        .order_by(HistoryEntry.changed_at.asc(), HistoryEntry.id.asc())
    )
    return list(result.scalars().all())


async def delete_entity_history(
    session: AsyncSession,
    *,
    workspace_id: str,
    entity_type: str,
    entity_ids: list[str],
) -> int:
    if not entity_ids:
        return 0
    result = await session.execute(
        delete(HistoryEntry).where(
            workspace_predicate(HistoryEntry, workspace_id),
            HistoryEntry.entity_type == entity_type,
            HistoryEntry.entity_id.in_(entity_ids),
        )
    )
    return int(result.rowcount or 0)
