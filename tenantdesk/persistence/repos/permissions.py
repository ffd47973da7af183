from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Permission
from tenantdesk.persistence.db import dialect_insert


async def ensure_permission(session: AsyncSession, *, entity_type: str, operation: str) -> int:
    # Race-safe get-or-create: concurrent inserts collapse on the composite unique key.
    stmt = dialect_insert(session, Permission).values(entity_type=entity_type, operation=operation)
    stmt = stmt.on_conflict_do_nothing(index_elements=[Permission.entity_type, Permission.operation])
    await session.execute(stmt)
    result = await session.execute(
        select(Permission.id).where(
            Permission.entity_type == entity_type,
            Permission.operation == operation,
        )
    )
    return int(result.scalar_one())


async def list_permissions(session: AsyncSession) -> list[Permission]:
    result = await session.execute(
        select(Permission).order_by(Permission.entity_type.asc(), Permission.operation.asc())
    )
    return list(result.scalars().all())
