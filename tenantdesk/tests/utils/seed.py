from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import HistoryEntry, Membership, Permission, User
from tenantdesk.services.auth.api_keys import issue_api_key
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator
from tenantdesk.services.rbac.gate import Identity
from tenantdesk.services.rbac.roles import RoleStore
from tenantdesk.services.tickets import TicketService
from tenantdesk.services.workspaces import create_workspace


@dataclass(frozen=True)
class SeededWorkspace:
    # Plain ids only; ORM rows expire whenever a failed unit of work rolls back.
    id: str
    super_id: str
    admin_id: str
    # Starter role ids keyed by role name.
    roles: dict[str, str]


async def create_user(
    session: AsyncSession,
    *,
    name: str | None = None,
    is_super: bool = False,
    is_active: bool = True,
    is_verified: bool = True,
) -> User:
    # Random names keep name-based references unambiguous across tests.
    user = User(
        id=uuid4().hex,
        name=name or f"user-{uuid4().hex[:10]}",
        email=None,
        is_active=is_active,
        is_verified=is_verified,
        is_super=is_super,
    )
    session.add(user)
    await session.commit()
    # Detach so later rollbacks in the same session cannot expire it.
    session.expunge(user)
    return user


async def create_api_key(session: AsyncSession, *, user_id: str) -> tuple[str, dict[str, str]]:
    issued = await issue_api_key(session, user_id=user_id, name="test-key")
    await session.commit()
    return issued.raw_key, {"Authorization": f"Bearer {issued.raw_key}"}


async def seed_workspace(
    session: AsyncSession,
    *,
    name: str = "Acme",
    super_id: str | None = None,
) -> SeededWorkspace:
    # Provision through the real path so starter roles and the admin binding exist.
    super_id = super_id or (await create_user(session, is_super=True)).id
    admin = await create_user(session)
    workspace = await create_workspace(
        session,
        identity=Identity(subject_id=super_id, is_super=True),
        name=name,
        admin_id=admin.id,
    )
    workspace_id = workspace.id
    views = await RoleStore(session).list_roles(workspace_id)
    return SeededWorkspace(
        id=workspace_id,
        super_id=super_id,
        admin_id=admin.id,
        roles={view.name: view.id for view in views},
    )


async def add_member(
    session: AsyncSession,
    seeded: SeededWorkspace,
    *,
    role: str,
    name: str | None = None,
) -> User:
    user = await create_user(session, name=name)
    await BulkAssignmentCoordinator(session).assign_one(
        seeded.id,
        user.id,
        seeded.roles.get(role, role),
        actor_id=seeded.admin_id,
    )
    return user


async def create_ticket(
    session: AsyncSession,
    seeded: SeededWorkspace,
    *,
    actor_id: str | None = None,
    title: str = "Broken login",
    parent_id: str | None = None,
) -> str:
    ticket = await TicketService(session).create_ticket(
        seeded.id,
        actor_id=actor_id or seeded.admin_id,
        title=title,
        description="Users cannot sign in",
        priority="HIGH",
        ticket_type="bug",
        parent_id=parent_id,
    )
    return ticket.id


async def count_memberships(session: AsyncSession, *, workspace_id: str, user_id: str | None = None) -> int:
    stmt = select(func.count(Membership.id)).where(Membership.workspace_id == workspace_id)
    if user_id is not None:
        stmt = stmt.where(Membership.user_id == user_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def history_rows(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: str,
    action: str | None = None,
) -> list[HistoryEntry]:
    # Read history without workspace scoping to catch rows written anywhere.
    stmt = select(HistoryEntry).where(
        HistoryEntry.entity_type == entity_type,
        HistoryEntry.entity_id == entity_id,
    )
    if action is not None:
        stmt = stmt.where(HistoryEntry.action == action)
    result = await session.execute(stmt.order_by(HistoryEntry.id.asc()))
    return list(result.scalars().all())


async def count_permissions(session: AsyncSession, *, entity_type: str, operation: str) -> int:
    stmt = select(func.count(Permission.id)).where(
        Permission.entity_type == entity_type,
        Permission.operation == operation,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())
