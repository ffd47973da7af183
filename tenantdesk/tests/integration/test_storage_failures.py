from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from tenantdesk.core.errors import InternalError
from tenantdesk.domain.vocab import TicketPriority
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator
from tenantdesk.services.rbac.gate import Identity
from tenantdesk.services.rbac.roles import RoleStore
from tenantdesk.services.tickets import TicketService
from tenantdesk.services.workspaces import create_workspace
from tenantdesk.tests.utils.seed import add_member, create_ticket, seed_workspace


def _break_storage(monkeypatch, session) -> None:
    # Every statement and identity lookup fails the way a dropped connection does.
    async def _fail(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(session, "execute", _fail)
    monkeypatch.setattr(session, "get", _fail)


@pytest.mark.asyncio
async def test_role_reads_surface_retryable_internal_errors(session, monkeypatch) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    _break_storage(monkeypatch, session)

    with pytest.raises(InternalError) as listed:
        await store.list_roles(seeded.id)
    with pytest.raises(InternalError) as fetched:
        await store.get_role(seeded.id, "Reviewer")

    assert listed.value.retryable is True
    assert fetched.value.retryable is True
    assert isinstance(listed.value.__cause__, OperationalError)


@pytest.mark.asyncio
async def test_bulk_reference_resolution_surfaces_retryable_internal_error(session, monkeypatch) -> None:
    seeded = await seed_workspace(session)
    member = await add_member(session, seeded, role="Reviewer")
    coordinator = BulkAssignmentCoordinator(session)
    _break_storage(monkeypatch, session)

    with pytest.raises(InternalError) as excinfo:
        await coordinator.assign(seeded.id, [member.id], ["Developer"], actor_id=seeded.admin_id)

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_ticket_reference_checks_surface_retryable_internal_error(session, monkeypatch) -> None:
    seeded = await seed_workspace(session)
    parent_id = await create_ticket(session, seeded)
    service = TicketService(session)
    _break_storage(monkeypatch, session)

    with pytest.raises(InternalError) as excinfo:
        await service.create_ticket(
            seeded.id,
            actor_id=seeded.admin_id,
            title="Child task",
            description="Split out of the parent",
            priority=TicketPriority.LOW,
            ticket_type="task",
            parent_id=parent_id,
        )

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_workspace_admin_lookup_surfaces_retryable_internal_error(session, monkeypatch) -> None:
    seeded = await seed_workspace(session)
    _break_storage(monkeypatch, session)

    with pytest.raises(InternalError) as excinfo:
        await create_workspace(
            session,
            identity=Identity(seeded.super_id, is_super=True),
            name="Globex",
            admin_id=seeded.admin_id,
        )

    assert excinfo.value.retryable is True
