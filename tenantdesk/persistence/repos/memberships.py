from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Membership, Role
from tenantdesk.persistence.db import dialect_insert
from tenantdesk.persistence.guards import workspace_predicate


async def get_membership(
    session: AsyncSession,
    *,
    workspace_id: str,
    user_id: str,
) -> Membership | None:
    result = await session.execute(
        select(Membership).where(
            workspace_predicate(Membership, workspace_id),
            Membership.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_membership_role(
    session: AsyncSession,
    *,
    workspace_id: str,
    user_id: str,
) -> Role | None:
    result = await session.execute(
        select(Role)
        .join(Membership, Membership.role_id == Role.id)
        .where(
            workspace_predicate(Membership, workspace_id),
            Membership.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_memberships_for_users(
    session: AsyncSession,
    *,
    workspace_id: str,
    user_ids: Iterable[str],
) -> dict[str, Membership]:
    ids = list(user_ids)
    if not ids:
        return {}
    result = await session.execute(
        select(Membership).where(
            workspace_predicate(Membership, workspace_id),
            Membership.user_id.in_(ids),
        )
        .execution_options(populate_existing=True)
    )
    return {row.user_id: row for row in result.scalars().all()}


async def upsert_memberships(
    session: AsyncSession,
    *,
    workspace_id: str,
    bindings: dict[str, str],
    now: datetime,
) -> int:
    # One row per (user, workspace); re-assignment updates the role in place.
    if not bindings:
        return 0
    rows = [
        {
            "id": uuid4().hex,
            "user_id": user_id,
            "workspace_id": workspace_id,
            "role_id": role_id,
            "created_at": now,
            "updated_at": now,
        }
        for user_id, role_id in bindings.items()
    ]
    stmt = dialect_insert(session, Membership).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Membership.user_id, Membership.workspace_id],
        set_={"role_id": stmt.excluded.role_id, "updated_at": stmt.excluded.updated_at},
    )
    await session.execute(stmt)
    return len(rows)


async def delete_membership(session: AsyncSession, *, workspace_id: str, user_id: str) -> int:
    result = await session.execute(
        delete(Membership).where(
            workspace_predicate(Membership, workspace_id),
            Membership.user_id == user_id,
        )
    )
    return int(result.rowcount or 0)


async def list_members(session: AsyncSession, *, workspace_id: str) -> list[Membership]:
    result = await session.execute(
        select(Membership)
        .where(workspace_predicate(Membership, workspace_id))
        .order_by(Membership.created_at.asc(), Membership.user_id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
