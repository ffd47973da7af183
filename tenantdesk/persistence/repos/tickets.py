from __future__ import annotations

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Ticket
from tenantdesk.persistence.guards import workspace_predicate


async def get_ticket(session: AsyncSession, ticket_id: str) -> Ticket | None:
    result = await session.execute(select(Ticket).where(Ticket.id == ticket_id))
    return result.scalar_one_or_none()


async def get_ticket_workspace_id(session: AsyncSession, ticket_id: str) -> str | None:
    result = await session.execute(select(Ticket.workspace_id).where(Ticket.id == ticket_id))
    return result.scalar_one_or_none()


async def get_parent_id(session: AsyncSession, ticket_id: str) -> str | None:
    result = await session.execute(select(Ticket.parent_id).where(Ticket.id == ticket_id))
    return result.scalar_one_or_none()


async def list_child_ids(session: AsyncSession, parent_ids: list[str]) -> list[str]:
    if not parent_ids:
        return []
    result = await session.execute(select(Ticket.id).where(Ticket.parent_id.in_(parent_ids)))
    return list(result.scalars().all())


async def list_tickets(
    session: AsyncSession,
    *,
    workspace_id: str,
    status: str | None = None,
    priority: str | None = None,
    assignee: str | None = None,
    query: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[int, list[Ticket]]:
    conditions = [workspace_predicate(Ticket, workspace_id)]
    if status:
        conditions.append(Ticket.status == status)
    if priority:
        conditions.append(Ticket.priority == priority)
    if assignee:
        conditions.append(Ticket.assigned_to == assignee)
    if query:
        pattern = f"%{query.lower()}%"
        conditions.append(
            or_(func.lower(Ticket.title).like(pattern), func.lower(Ticket.description).like(pattern))
        )
    total = await session.execute(select(func.count(Ticket.id)).where(*conditions))
    result = await session.execute(
        select(Ticket)
        .where(*conditions)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return int(total.scalar_one()), list(result.scalars().all())


async def delete_tickets(session: AsyncSession, *, workspace_id: str, ticket_ids: list[str]) -> int:
    if not ticket_ids:
        return 0
    result = await session.execute(
        delete(Ticket).where(workspace_predicate(Ticket, workspace_id), Ticket.id.in_(ticket_ids))
    )
    return int(result.rowcount or 0)
