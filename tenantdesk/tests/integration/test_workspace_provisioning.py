from __future__ import annotations

import pytest
from sqlalchemy import func, select

from tenantdesk.core.errors import ForbiddenError, NotFoundError
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import EntityType
from tenantdesk.persistence.repos import memberships as memberships_repo
from tenantdesk.services.audit import AuditLog
from tenantdesk.services.rbac.gate import Identity
from tenantdesk.services.rbac.roles import RoleStore
from tenantdesk.services.workspaces import create_workspace
from tenantdesk.tests.utils.seed import create_user, seed_workspace


@pytest.mark.asyncio
async def test_provisioning_creates_starter_roles_and_binds_admin(session) -> None:
    seeded = await seed_workspace(session)

    views = {view.name: view for view in await RoleStore(session).list_roles(seeded.id)}
    assert set(views) == {"Admin", "Designer", "Developer", "DevOps", "Lead", "Reviewer"}
    assert views["Admin"].is_administrative is True
    assert not any(view.is_administrative for name, view in views.items() if name != "Admin")
    assert ("TICKET", "MANAGE") in views["Admin"].grants
    assert ("TICKET", "DELETE") in views["Lead"].grants
    assert ("TICKET", "UPDATE") not in views["Reviewer"].grants

    role = await memberships_repo.get_membership_role(session, workspace_id=seeded.id, user_id=seeded.admin_id)
    assert role is not None
    assert role.id == views["Admin"].id

    entries = await AuditLog(session).history(
        workspace_id=seeded.id, entity_type=EntityType.WORKSPACE, entity_id=seeded.id
    )
    assert [(entry.action, entry.field_changed) for entry in entries] == [("CREATE", "CREATE")]
    assert entries[0].changed_by == seeded.super_id


@pytest.mark.asyncio
async def test_only_super_identity_can_create_workspaces(session) -> None:
    admin = await create_user(session)

    with pytest.raises(ForbiddenError):
        await create_workspace(session, identity=Identity(admin.id), name="Rogue", admin_id=admin.id)

    result = await session.execute(select(func.count(Workspace.id)))
    assert result.scalar_one() == 0


@pytest.mark.asyncio
async def test_unknown_admin_is_not_found(session) -> None:
    root = await create_user(session, is_super=True)

    with pytest.raises(NotFoundError):
        await create_workspace(
            session,
            identity=Identity(root.id, is_super=True),
            name="Acme",
            admin_id="nobody",
        )
