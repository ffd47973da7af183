from __future__ import annotations

import pytest

from tenantdesk.core.errors import NotFoundError
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.services.comments import CommentService
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator
from tenantdesk.services.rbac.gate import (
    DENY_INSUFFICIENT,
    DENY_NOT_MEMBER,
    AuthorizationGate,
    Identity,
)
from tenantdesk.services.rbac.membership import WorkspaceReference
from tenantdesk.services.rbac.roles import RoleStore
from tenantdesk.tests.utils.seed import add_member, create_ticket, create_user, seed_workspace


ALL_PAIRS = [(entity, op) for entity in EntityType for op in Operation]


async def _workspace(session, workspace_id: str) -> Workspace:
    workspace = await session.get(Workspace, workspace_id)
    assert workspace is not None
    return workspace


@pytest.mark.asyncio
async def test_super_identity_is_allowed_everywhere(session) -> None:
    seeded = await seed_workspace(session)
    gate = AuthorizationGate(session)
    workspace = await _workspace(session, seeded.id)

    for entity, op in ALL_PAIRS:
        decision = await gate.authorize(Identity(seeded.super_id, is_super=True), workspace, entity, op)
        assert decision.allowed, (entity, op)


@pytest.mark.asyncio
async def test_workspace_admin_is_allowed_without_any_role(session) -> None:
    seeded = await seed_workspace(session)
    await BulkAssignmentCoordinator(session).remove_member(seeded.id, seeded.admin_id, actor_id=seeded.super_id)
    gate = AuthorizationGate(session)
    workspace = await _workspace(session, seeded.id)

    capabilities = await gate.resolve(Identity(seeded.admin_id), workspace)

    assert capabilities.is_workspace_admin
    assert capabilities.role_id is None
    for entity, op in ALL_PAIRS:
        if (entity, op) == (EntityType.WORKSPACE, Operation.CREATE):
            continue
        assert capabilities.allows(entity, op), (entity, op)
    assert not gate.authorize_workspace_creation(Identity(seeded.admin_id)).allowed


@pytest.mark.asyncio
async def test_non_member_is_denied_every_operation(session) -> None:
    seeded = await seed_workspace(session)
    outsider = await create_user(session)
    gate = AuthorizationGate(session)
    workspace = await _workspace(session, seeded.id)

    for entity, op in ALL_PAIRS:
        decision = await gate.authorize(Identity(outsider.id), workspace, entity, op)
        assert not decision.allowed, (entity, op)
        if (entity, op) != (EntityType.WORKSPACE, Operation.CREATE):
            assert decision.reason == DENY_NOT_MEMBER


@pytest.mark.asyncio
async def test_member_of_another_workspace_is_not_a_member_here(session) -> None:
    acme = await seed_workspace(session, name="Acme")
    globex = await seed_workspace(session, name="Globex", super_id=acme.super_id)
    gate = AuthorizationGate(session)

    decision = await gate.authorize(
        Identity(globex.admin_id), await _workspace(session, acme.id), EntityType.TICKET, Operation.READ
    )

    assert decision.reason == DENY_NOT_MEMBER


@pytest.mark.asyncio
async def test_reviewer_cannot_update_tickets(session) -> None:
    seeded = await seed_workspace(session)
    await RoleStore(session).replace_grants(
        seeded.id, "Reviewer", [("TICKET", "READ")], actor_id=seeded.admin_id
    )
    reviewer = await add_member(session, seeded, role="Reviewer")
    gate = AuthorizationGate(session)
    workspace = await _workspace(session, seeded.id)

    read = await gate.authorize(Identity(reviewer.id), workspace, EntityType.TICKET, Operation.READ)
    update = await gate.authorize(Identity(reviewer.id), workspace, EntityType.TICKET, Operation.UPDATE)

    assert read.allowed
    assert (update.allowed, update.reason) == (False, DENY_INSUFFICIENT)


@pytest.mark.asyncio
async def test_grant_edits_take_effect_on_next_resolution(session) -> None:
    seeded = await seed_workspace(session)
    reviewer = await add_member(session, seeded, role="Reviewer")
    gate = AuthorizationGate(session)
    workspace = await _workspace(session, seeded.id)
    assert not (await gate.resolve(Identity(reviewer.id), workspace)).allows("TICKET", "UPDATE")

    await RoleStore(session).grant(seeded.id, "Reviewer", [("TICKET", "MANAGE")], actor_id=seeded.admin_id)
    capabilities = await gate.resolve(Identity(reviewer.id), workspace)

    assert capabilities.allows("TICKET", "UPDATE")
    assert capabilities.allows("TICKET", "DELETE")
    assert capabilities.role_name == "Reviewer"


@pytest.mark.asyncio
async def test_workspace_resolves_through_comment_and_ticket(session) -> None:
    seeded = await seed_workspace(session)
    ticket_id = await create_ticket(session, seeded)
    comment = await CommentService(session).create_comment(ticket_id, actor_id=seeded.admin_id, message="On it")
    resolver = AuthorizationGate(session).resolver

    assert await resolver.resolve_workspace(WorkspaceReference("comment", comment.id)) == seeded.id
    assert await resolver.resolve_workspace(WorkspaceReference("ticket", ticket_id)) == seeded.id
    with pytest.raises(NotFoundError):
        await resolver.resolve_workspace(WorkspaceReference("comment", "missing"))
    with pytest.raises(NotFoundError):
        await resolver.resolve_workspace(WorkspaceReference("ticket", "missing"))
    with pytest.raises(NotFoundError):
        await resolver.get_workspace("missing")
