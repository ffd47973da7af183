from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tenantdesk.core.errors import ConflictError, NotFoundError, ValidationError
from tenantdesk.domain.models import Role, RoleGrant
from tenantdesk.persistence.db import Database
from tenantdesk.persistence.repos import roles as roles_repo
from tenantdesk.services.rbac.bulk import BulkAssignmentCoordinator
from tenantdesk.services.rbac.roles import RoleStore, is_administrative_role
from tenantdesk.tests.utils.seed import add_member, history_rows, seed_workspace


TRIAGE_GRANTS = [("ticket", "read"), ("comment", "create")]


@pytest.mark.asyncio
async def test_create_role_normalizes_grants_and_records_history(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)

    view = await store.create_role(
        seeded.id,
        "Triage",
        "First responders",
        TRIAGE_GRANTS + [("TICKET", "READ")],
        actor_id=seeded.admin_id,
    )

    assert view.grants == (("COMMENT", "CREATE"), ("TICKET", "READ"))
    assert view.is_administrative is False
    rows = await history_rows(session, entity_type="ROLE", entity_id=view.id)
    assert [(row.action, row.field_changed, row.old_value, row.new_value) for row in rows] == [
        ("CREATE", "CREATE", "false", "true")
    ]


@pytest.mark.asyncio
async def test_duplicate_role_name_conflicts_case_insensitively(session) -> None:
    seeded = await seed_workspace(session)

    with pytest.raises(ConflictError):
        await RoleStore(session).create_role(seeded.id, "reviewer", None, TRIAGE_GRANTS, actor_id=seeded.admin_id)


@pytest.mark.asyncio
async def test_storage_rejects_role_names_differing_only_in_case(session) -> None:
    seeded = await seed_workspace(session)
    await RoleStore(session).create_role(seeded.id, "Ops", None, [("TICKET", "READ")], actor_id=seeded.admin_id)

    session.add(Role(id="shadow-role", workspace_id=seeded.id, name="ops", is_administrative=False))
    with pytest.raises(IntegrityError):
        await session.flush()
    await session.rollback()

    names = (await session.execute(select(Role.name).where(Role.workspace_id == seeded.id))).scalars().all()
    assert [name for name in names if name.lower() == "ops"] == ["Ops"]


@pytest.mark.asyncio
async def test_concurrent_creates_differing_in_case_keep_one_role(database: Database) -> None:
    async with database.session() as session:
        seeded = await seed_workspace(session)

    async def _create(name: str) -> str:
        async with database.session() as session:
            try:
                view = await RoleStore(session).create_role(
                    seeded.id, name, None, [("TICKET", "READ")], actor_id=seeded.admin_id
                )
            except ConflictError:
                return "conflict"
            return view.name

    outcomes = await asyncio.gather(_create("Ops"), _create("ops"))

    assert outcomes.count("conflict") == 1
    async with database.session() as session:
        names = (await session.execute(select(Role.name).where(Role.workspace_id == seeded.id))).scalars().all()
    assert len([name for name in names if name.lower() == "ops"]) == 1


@pytest.mark.asyncio
async def test_same_role_name_is_allowed_in_another_workspace(session) -> None:
    first = await seed_workspace(session, name="Acme")
    second = await seed_workspace(session, name="Globex", super_id=first.super_id)

    view = await RoleStore(session).create_role(second.id, "Triage", None, TRIAGE_GRANTS, actor_id=second.admin_id)
    await RoleStore(session).create_role(first.id, "Triage", None, TRIAGE_GRANTS, actor_id=first.admin_id)

    assert view.workspace_id == second.id


@pytest.mark.asyncio
async def test_role_name_must_have_two_characters(session) -> None:
    seeded = await seed_workspace(session)

    with pytest.raises(ValidationError):
        await RoleStore(session).create_role(seeded.id, " x ", None, TRIAGE_GRANTS, actor_id=seeded.admin_id)


@pytest.mark.asyncio
async def test_replace_grants_round_trips_regardless_of_prior_grants(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    target = {("HISTORY", "READ"), ("TICKET", "UPDATE")}

    await store.replace_grants(seeded.id, seeded.roles["Developer"], sorted(target), actor_id=seeded.admin_id)
    await store.replace_grants(seeded.id, "reviewer", sorted(target), actor_id=seeded.admin_id)

    views = {view.name: view for view in await store.list_roles(seeded.id)}
    assert set(views["Developer"].grants) == target
    assert set(views["Reviewer"].grants) == target


@pytest.mark.asyncio
async def test_replace_grants_records_permission_change_once(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    role_id = seeded.roles["Reviewer"]

    await store.replace_grants(seeded.id, role_id, [("TICKET", "READ")], actor_id=seeded.admin_id)
    await store.replace_grants(seeded.id, role_id, [("TICKET", "READ")], actor_id=seeded.admin_id)

    rows = await history_rows(session, entity_type="ROLE", entity_id=role_id, action="UPDATE")
    assert len(rows) == 1
    assert rows[0].field_changed == "permissions"
    assert rows[0].old_value == "COMMENT:CREATE,COMMENT:READ,TICKET:READ,WORKSPACE:READ"
    assert rows[0].new_value == "TICKET:READ"


@pytest.mark.asyncio
async def test_grant_is_idempotent_and_additive(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    role_id = seeded.roles["Reviewer"]

    first = await store.grant(seeded.id, role_id, [("TICKET", "UPDATE")], actor_id=seeded.admin_id)
    second = await store.grant(seeded.id, role_id, [("ticket", "update")], actor_id=seeded.admin_id)

    assert first.grants == second.grants
    assert ("TICKET", "UPDATE") in second.grants
    assert ("TICKET", "READ") in second.grants
    assert len(await history_rows(session, entity_type="ROLE", entity_id=role_id, action="UPDATE")) == 1

    with pytest.raises(ValidationError):
        await store.grant(seeded.id, role_id, [], actor_id=seeded.admin_id)


@pytest.mark.asyncio
async def test_update_role_renames_with_history_and_conflict_check(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    role_id = seeded.roles["Designer"]

    view = await store.update_role(seeded.id, role_id, actor_id=seeded.admin_id, name="UX", description="Design")

    assert (view.name, view.description) == ("UX", "Design")
    rows = await history_rows(session, entity_type="ROLE", entity_id=role_id, action="UPDATE")
    assert {(row.field_changed, row.old_value, row.new_value) for row in rows} == {
        ("name", "Designer", "UX"),
        ("description", None, "Design"),
    }
    with pytest.raises(ConflictError):
        await store.update_role(seeded.id, role_id, actor_id=seeded.admin_id, name="lead")


@pytest.mark.asyncio
async def test_deleting_role_in_use_conflicts_and_leaves_role_intact(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    role_id = seeded.roles["Developer"]
    await add_member(session, seeded, role="Developer")
    before = await roles_repo.list_grants(session, role_ids=[role_id])

    with pytest.raises(ConflictError) as excinfo:
        await store.delete_role(seeded.id, role_id, actor_id=seeded.admin_id)

    assert excinfo.value.details["memberships"] == 1
    assert await session.get(Role, role_id) is not None
    assert await roles_repo.list_grants(session, role_ids=[role_id]) == before
    assert await history_rows(session, entity_type="ROLE", entity_id=role_id, action="DELETE") == []


@pytest.mark.asyncio
async def test_delete_unused_role_removes_grants_and_keeps_history(session) -> None:
    seeded = await seed_workspace(session)
    role_id = seeded.roles["DevOps"]

    await RoleStore(session).delete_role(seeded.id, "devops", actor_id=seeded.admin_id)

    result = await session.execute(select(RoleGrant).where(RoleGrant.role_id == role_id))
    assert result.scalars().all() == []
    with pytest.raises(NotFoundError):
        await RoleStore(session).get_role(seeded.id, role_id)
    rows = await history_rows(session, entity_type="ROLE", entity_id=role_id)
    assert [row.action for row in rows] == ["CREATE", "DELETE"]


@pytest.mark.asyncio
async def test_administrative_roles_are_guarded(session) -> None:
    seeded = await seed_workspace(session)
    store = RoleStore(session)
    owners = await store.create_role(
        seeded.id,
        "Owners",
        None,
        [("ROLE", "MANAGE")],
        actor_id=seeded.admin_id,
        is_administrative=True,
    )

    # The admin still holds the Admin role, so no administrative role may go.
    with pytest.raises(ConflictError):
        await store.delete_role(seeded.id, owners.id, actor_id=seeded.admin_id)

    await BulkAssignmentCoordinator(session).remove_member(seeded.id, seeded.admin_id, actor_id=seeded.admin_id)
    await store.delete_role(seeded.id, owners.id, actor_id=seeded.admin_id)

    with pytest.raises(ConflictError) as excinfo:
        await store.delete_role(seeded.id, "Admin", actor_id=seeded.admin_id)
    assert "last administrator role" in excinfo.value.message


def test_legacy_admin_name_counts_as_administrative() -> None:
    assert is_administrative_role(Role(name="admin", is_administrative=False))
    assert is_administrative_role(Role(name="Owners", is_administrative=True))
    assert not is_administrative_role(Role(name="Administrators", is_administrative=False))
