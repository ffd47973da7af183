from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import NotFoundError, ValidationError
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import EntityType, HistoryAction, Operation
from tenantdesk.persistence.db import bounded, unit_of_work
from tenantdesk.persistence.repos import users as users_repo
from tenantdesk.services.audit import AuditLog
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator
from tenantdesk.services.rbac.gate import AuthorizationGate, Identity
from tenantdesk.services.rbac.roles import RoleStore


logger = logging.getLogger(__name__)

_CRUD = (Operation.CREATE, Operation.READ, Operation.UPDATE, Operation.DELETE)
_CONTRIBUTOR = (
    (EntityType.WORKSPACE, Operation.READ),
    (EntityType.TICKET, Operation.CREATE),
    (EntityType.TICKET, Operation.READ),
    (EntityType.TICKET, Operation.UPDATE),
    (EntityType.COMMENT, Operation.CREATE),
    (EntityType.COMMENT, Operation.READ),
    (EntityType.COMMENT, Operation.UPDATE),
    (EntityType.COMMENT, Operation.DELETE),
)


@dataclass(frozen=True)
class StarterRole:
    name: str
    grants: tuple[tuple[EntityType, Operation], ...]
    description: str | None = None
    is_administrative: bool = False


STARTER_ROLES: tuple[StarterRole, ...] = (
    StarterRole(
        name="Admin",
        description="Workspace administration",
        is_administrative=True,
        grants=(
            *((EntityType.ROLE, op) for op in _CRUD),
            *((EntityType.USERROLE, op) for op in _CRUD),
            (EntityType.WORKSPACE, Operation.READ),
            (EntityType.TICKET, Operation.MANAGE),
            (EntityType.COMMENT, Operation.MANAGE),
            (EntityType.HISTORY, Operation.READ),
        ),
    ),
    StarterRole(name="Designer", grants=_CONTRIBUTOR),
    StarterRole(name="Developer", grants=_CONTRIBUTOR),
    StarterRole(name="DevOps", grants=_CONTRIBUTOR),
    StarterRole(
        name="Lead",
        grants=(*_CONTRIBUTOR, (EntityType.TICKET, Operation.DELETE)),
    ),
    StarterRole(
        name="Reviewer",
        grants=(
            (EntityType.WORKSPACE, Operation.READ),
            (EntityType.TICKET, Operation.READ),
            (EntityType.COMMENT, Operation.CREATE),
            (EntityType.COMMENT, Operation.READ),
        ),
    ),
)


async def create_workspace(
    session: AsyncSession,
    *,
    identity: Identity,
    name: str,
    admin_id: str,
    timeout_s: float | None = None,
) -> Workspace:
    """Provision a workspace with its starter roles and bind the admin.

    Only the super identity may create workspaces. The workspace row, every
    starter role and grant, the admin binding and the CREATE history entries
    commit together.
    """
    AuthorizationGate(session, timeout_s=timeout_s).authorize_workspace_creation(identity).raise_for_denial()
    cleaned = (name or "").strip()
    if len(cleaned) < 2:
        raise ValidationError("Workspace name must be at least 2 characters", details={"name": [name]})
    admin = await bounded(users_repo.get_user(session, admin_id), timeout_s=timeout_s, operation="workspace.admin")
    if admin is None:
        raise NotFoundError("Admin user not found", details={"admin_id": [admin_id]})

    roles = RoleStore(session, timeout_s=timeout_s)
    members = BulkAssignmentCoordinator(session, timeout_s=timeout_s)
    audit = AuditLog(session)
    async with unit_of_work(session, timeout_s=timeout_s, operation="workspace.create"):
        workspace = Workspace(
            id=uuid4().hex,
            name=cleaned,
            admin_id=admin.id,
            created_by=identity.subject_id,
        )
        session.add(workspace)
        await session.flush()
        await audit.record_lifecycle(
            workspace_id=workspace.id,
            entity_type=EntityType.WORKSPACE,
            entity_id=workspace.id,
            actor_id=identity.subject_id,
            action=HistoryAction.CREATE,
        )
        admin_role_id: str | None = None
        for starter in STARTER_ROLES:
            role = await roles.stage_role(
                workspace.id,
                starter.name,
                starter.description,
                starter.grants,
                actor_id=identity.subject_id,
                is_administrative=starter.is_administrative,
            )
            if starter.is_administrative:
                admin_role_id = role.id
        if admin_role_id is not None:
            await members.stage_binding(workspace.id, admin.id, admin_role_id, actor_id=identity.subject_id)
    logger.info(
        "workspace_created workspace_id=%s admin_id=%s actor_id=%s roles=%d",
        workspace.id,
        admin.id,
        identity.subject_id,
        len(STARTER_ROLES),
    )
    return workspace
