from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import Membership, Permission, Role, RoleGrant
from tenantdesk.domain.vocab import LEGACY_ADMIN_ROLE_NAME
from tenantdesk.persistence.db import dialect_insert
from tenantdesk.persistence.guards import require_workspace_id, workspace_predicate


def _administrative_predicate():
    # Honor the explicit flag and the legacy name convention together.
    return or_(Role.is_administrative.is_(True), func.upper(Role.name) == LEGACY_ADMIN_ROLE_NAME)


async def get_role(session: AsyncSession, *, workspace_id: str, role_id: str) -> Role | None:
    result = await session.execute(
        select(Role).where(Role.id == role_id, workspace_predicate(Role, workspace_id))
    )
    return result.scalar_one_or_none()


async def get_role_by_name(session: AsyncSession, *, workspace_id: str, name: str) -> Role | None:
    # Names are matched case-insensitively within the workspace.
    result = await session.execute(
        select(Role).where(
            workspace_predicate(Role, workspace_id),
            func.lower(Role.name) == name.strip().lower(),
        )
    )
    return result.scalars().first()


async def list_roles(session: AsyncSession, *, workspace_id: str) -> list[Role]:
    result = await session.execute(
        select(Role).where(workspace_predicate(Role, workspace_id)).order_by(Role.name.asc())
    )
    return list(result.scalars().all())


async def find_roles(
    session: AsyncSession,
    *,
    workspace_id: str,
    refs: Iterable[str],
) -> list[Role]:
    # Match references against ids or lowercased names in one query.
    keys = list(refs)
    if not keys:
        return []
    lowered = [key.strip().lower() for key in keys]
    result = await session.execute(
        select(Role).where(
            workspace_predicate(Role, workspace_id),
            or_(Role.id.in_(keys), func.lower(Role.name).in_(lowered)),
        )
    )
    return list(result.scalars().all())


async def list_grants(
    session: AsyncSession,
    *,
    role_ids: Iterable[str],
) -> dict[str, list[tuple[str, str]]]:
    ids = list(role_ids)
    grants: dict[str, list[tuple[str, str]]] = defaultdict(list)
    if not ids:
        return grants
    result = await session.execute(
        select(RoleGrant.role_id, Permission.entity_type, Permission.operation)
        .join(Permission, Permission.id == RoleGrant.permission_id)
        .where(RoleGrant.role_id.in_(ids))
        .order_by(Permission.entity_type.asc(), Permission.operation.asc())
    )
    for row in result:
        grants[row.role_id].append((row.entity_type, row.operation))
    return grants


async def insert_grants(session: AsyncSession, *, role_id: str, permission_ids: Iterable[int]) -> None:
    # Re-granting an existing permission is a no-op on the composite key.
    rows = [{"role_id": role_id, "permission_id": pid} for pid in sorted(set(permission_ids))]
    if not rows:
        return
    stmt = dialect_insert(session, RoleGrant).values(rows)
    stmt = stmt.on_conflict_do_nothing(index_elements=[RoleGrant.role_id, RoleGrant.permission_id])
    await session.execute(stmt)


async def delete_grants(session: AsyncSession, *, role_id: str) -> None:
    await session.execute(delete(RoleGrant).where(RoleGrant.role_id == role_id))


async def delete_role(session: AsyncSession, *, workspace_id: str, role_id: str) -> None:
    await session.execute(delete(RoleGrant).where(RoleGrant.role_id == role_id))
    await session.execute(
        delete(Role).where(Role.id == role_id, workspace_predicate(Role, workspace_id))
    )


async def count_role_memberships(session: AsyncSession, *, workspace_id: str, role_id: str) -> int:
    result = await session.execute(
        select(func.count(Membership.id)).where(
            Membership.role_id == role_id,
            workspace_predicate(Membership, workspace_id),
        )
    )
    return int(result.scalar_one())


async def count_administrative_memberships(session: AsyncSession, *, workspace_id: str) -> int:
    require_workspace_id(workspace_id)
    result = await session.execute(
        select(func.count(Membership.id))
        .join(Role, Role.id == Membership.role_id)
        .where(Membership.workspace_id == workspace_id, _administrative_predicate())
    )
    return int(result.scalar_one())


async def count_administrative_roles(session: AsyncSession, *, workspace_id: str) -> int:
    result = await session.execute(
        select(func.count(Role.id)).where(
            workspace_predicate(Role, workspace_id),
            _administrative_predicate(),
        )
    )
    return int(result.scalar_one())
