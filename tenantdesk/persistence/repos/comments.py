from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Comment
from tenantdesk.persistence.guards import workspace_predicate


async def get_comment(session: AsyncSession, comment_id: str) -> Comment | None:
    result = await session.execute(select(Comment).where(Comment.id == comment_id))
    return result.scalar_one_or_none()


async def get_comment_ticket_id(session: AsyncSession, comment_id: str) -> str | None:
    result = await session.execute(select(Comment.ticket_id).where(Comment.id == comment_id))
    return result.scalar_one_or_none()


async def list_ticket_comments(session: AsyncSession, *, ticket_id: str) -> list[Comment]:
    result = await session.execute(
        select(Comment)
        .where(Comment.ticket_id == ticket_id)
        .order_by(Comment.created_at.asc(), Comment.id.asc())
    )
    return list(result.scalars().all())


async def delete_ticket_comments(session: AsyncSession, *, ticket_ids: list[str]) -> int:
    if not ticket_ids:
        return 0
    result = await session.execute(delete(Comment).where(Comment.ticket_id.in_(ticket_ids)))
    return int(result.rowcount or 0)


async def list_reply_ids(session: AsyncSession, parent_ids: list[str]) -> list[str]:
    if not parent_ids:
        return []
    result = await session.execute(select(Comment.id).where(Comment.parent_id.in_(parent_ids)))
    return list(result.scalars().all())


async def delete_comments(session: AsyncSession, *, workspace_id: str, comment_ids: list[str]) -> int:
    if not comment_ids:
        return 0
    result = await session.execute(
        delete(Comment).where(workspace_predicate(Comment, workspace_id), Comment.id.in_(comment_ids))
    )
    return int(result.rowcount or 0)
