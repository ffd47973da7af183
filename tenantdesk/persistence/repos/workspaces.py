from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Workspace
from tenantdesk.persistence.guards import require_workspace_id


async def get_workspace(session: AsyncSession, workspace_id: str) -> Workspace | None:
    require_workspace_id(workspace_id)
    result = await session.execute(select(Workspace).where(Workspace.id == workspace_id))
    return result.scalar_one_or_none()
