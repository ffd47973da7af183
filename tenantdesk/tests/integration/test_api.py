from __future__ import annotations

from dataclasses import dataclass

import pytest
from httpx import ASGITransport, AsyncClient

from tenantdesk.apps.api.main import create_app
from tenantdesk.persistence.db import Database
from tenantdesk.tests.utils.seed import SeededWorkspace, add_member, create_api_key, create_user, seed_workspace


@dataclass(frozen=True)
class _Tenant:
    seeded: SeededWorkspace
    super_headers: dict[str, str]
    admin_headers: dict[str, str]
    reviewer_id: str
    reviewer_headers: dict[str, str]
    outsider_headers: dict[str, str]


def _client(database: Database) -> AsyncClient:
    app = create_app(database=database)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _tenant(database: Database) -> _Tenant:
    # Seed one workspace plus a key for each kind of caller.
    async with database.session() as session:
        seeded = await seed_workspace(session)
        reviewer = await add_member(session, seeded, role="Reviewer")
        outsider = await create_user(session)
        _, super_headers = await create_api_key(session, user_id=seeded.super_id)
        _, admin_headers = await create_api_key(session, user_id=seeded.admin_id)
        _, reviewer_headers = await create_api_key(session, user_id=reviewer.id)
        _, outsider_headers = await create_api_key(session, user_id=outsider.id)
    return _Tenant(
        seeded=seeded,
        super_headers=super_headers,
        admin_headers=admin_headers,
        reviewer_id=reviewer.id,
        reviewer_headers=reviewer_headers,
        outsider_headers=outsider_headers,
    )


async def _create_ticket(client: AsyncClient, tenant: _Tenant) -> str:
    response = await client.post(
        f"/v1/workspaces/{tenant.seeded.id}/tickets",
        json={"title": "Broken login", "description": "500 on submit", "priority": "HIGH", "ticket_type": "bug"},
        headers=tenant.admin_headers,
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped(database: Database) -> None:
    async with _client(database) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_missing_or_unknown_key_is_unauthorized(database: Database) -> None:
    async with _client(database) as client:
        missing = await client.get("/v1/workspaces/w1")
        unknown = await client.get("/v1/workspaces/w1", headers={"Authorization": "Bearer tdk_nope_nope"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert unknown.status_code == 401


@pytest.mark.asyncio
async def test_only_super_key_creates_workspaces(database: Database) -> None:
    tenant = await _tenant(database)
    payload = {"name": "Globex", "admin_id": tenant.seeded.admin_id}

    async with _client(database) as client:
        created = await client.post("/v1/workspaces", json=payload, headers=tenant.super_headers)
        denied = await client.post("/v1/workspaces", json=payload, headers=tenant.admin_headers)
        roles = await client.get(
            f"/v1/workspaces/{created.json()['data']['id']}/roles",
            headers=tenant.admin_headers,
        )

    assert created.status_code == 201
    assert created.json()["data"]["admin_id"] == tenant.seeded.admin_id
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert len(roles.json()["data"]) == 6


@pytest.mark.asyncio
async def test_ticket_update_is_audited(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        ticket_id = await _create_ticket(client, tenant)
        updated = await client.patch(
            f"/v1/tickets/{ticket_id}",
            json={"status": "CLOSED", "priority": "HIGH"},
            headers=tenant.admin_headers,
        )
        history = await client.get(f"/v1/tickets/{ticket_id}/history", headers=tenant.admin_headers)

    assert updated.status_code == 200
    assert updated.json()["data"]["status"] == "CLOSED"
    updates = [entry for entry in history.json()["data"] if entry["action"] == "UPDATE"]
    assert [(e["field_changed"], e["old_value"], e["new_value"]) for e in updates] == [
        ("status", "OPEN", "CLOSED")
    ]
    assert updates[0]["changed_by"] == tenant.seeded.admin_id


@pytest.mark.asyncio
async def test_reviewer_and_outsider_are_denied_with_reasons(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        ticket_id = await _create_ticket(client, tenant)
        readable = await client.get(f"/v1/tickets/{ticket_id}", headers=tenant.reviewer_headers)
        reviewer_update = await client.patch(
            f"/v1/tickets/{ticket_id}", json={"status": "CLOSED"}, headers=tenant.reviewer_headers
        )
        outsider_read = await client.get(f"/v1/tickets/{ticket_id}", headers=tenant.outsider_headers)

    assert readable.status_code == 200
    assert reviewer_update.status_code == 403
    assert reviewer_update.json()["error"]["message"] == "insufficient permission"
    assert reviewer_update.json()["error"]["details"] == {"entity": "TICKET", "operation": "UPDATE"}
    assert outsider_read.status_code == 403
    assert outsider_read.json()["error"]["message"] == "not a member"


@pytest.mark.asyncio
async def test_unresolvable_references_are_not_found(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        ticket = await client.get("/v1/tickets/missing", headers=tenant.admin_headers)
        workspace = await client.get("/v1/workspaces/missing", headers=tenant.super_headers)

    assert ticket.status_code == 404
    assert ticket.json()["error"]["code"] == "NOT_FOUND"
    assert workspace.status_code == 404


@pytest.mark.asyncio
async def test_bulk_assign_reports_invalid_references(database: Database) -> None:
    tenant = await _tenant(database)
    roles = tenant.seeded.roles

    async with _client(database) as client:
        rejected = await client.post(
            f"/v1/workspaces/{tenant.seeded.id}/members/bulk",
            json={"subjects": [tenant.reviewer_id, "ghost"], "grants": [roles["Developer"], "Wizard"]},
            headers=tenant.admin_headers,
        )
        mismatched = await client.post(
            f"/v1/workspaces/{tenant.seeded.id}/members/bulk",
            json={"subjects": [tenant.reviewer_id], "grants": []},
            headers=tenant.admin_headers,
        )
        applied = await client.post(
            f"/v1/workspaces/{tenant.seeded.id}/members/bulk",
            json={"subjects": [tenant.reviewer_id], "grants": ["developer"]},
            headers=tenant.admin_headers,
        )
        members = await client.get(f"/v1/workspaces/{tenant.seeded.id}/members", headers=tenant.admin_headers)

    assert rejected.status_code == 422
    assert rejected.json()["error"]["details"] == {"invalid_roles": ["Wizard"], "missing_users": ["ghost"]}
    assert mismatched.status_code == 422
    assert applied.status_code == 200
    assert applied.json()["data"]["pairs"][0]["role_name"] == "Developer"
    bindings = {row["user_id"]: row["role_id"] for row in members.json()["data"]}
    assert bindings[tenant.reviewer_id] == roles["Developer"]


@pytest.mark.asyncio
async def test_role_lifecycle_over_http(database: Database) -> None:
    tenant = await _tenant(database)
    base = f"/v1/workspaces/{tenant.seeded.id}/roles"

    async with _client(database) as client:
        created = await client.post(
            base,
            json={"name": "Triage", "permissions": [{"entity": "TICKET", "operation": "READ"}]},
            headers=tenant.admin_headers,
        )
        duplicate = await client.post(
            base,
            json={"name": "triage", "permissions": [{"entity": "TICKET", "operation": "READ"}]},
            headers=tenant.admin_headers,
        )
        replaced = await client.patch(
            f"{base}/Triage",
            json={"permissions": [{"entity": "COMMENT", "operation": "MANAGE"}]},
            headers=tenant.admin_headers,
        )
        in_use = await client.delete(f"{base}/Reviewer", headers=tenant.admin_headers)
        removed = await client.delete(f"{base}/Triage", headers=tenant.admin_headers)
        reviewer_create = await client.post(
            base,
            json={"name": "Sneaky", "permissions": [{"entity": "ROLE", "operation": "MANAGE"}]},
            headers=tenant.reviewer_headers,
        )

    assert created.status_code == 201
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"
    assert replaced.json()["data"]["permissions"] == [{"entity": "COMMENT", "operation": "MANAGE"}]
    assert in_use.status_code == 409
    assert removed.status_code == 204
    assert reviewer_create.status_code == 403


@pytest.mark.asyncio
async def test_comment_edit_requires_author_or_moderator(database: Database) -> None:
    tenant = await _tenant(database)
    async with database.session() as session:
        developer = await add_member(session, tenant.seeded, role="Developer")
        _, developer_headers = await create_api_key(session, user_id=developer.id)

    async with _client(database) as client:
        ticket_id = await _create_ticket(client, tenant)
        posted = await client.post(
            f"/v1/tickets/{ticket_id}/comments",
            json={"message": "Looking into it"},
            headers=tenant.admin_headers,
        )
        comment_id = posted.json()["data"]["id"]
        developer_edit = await client.patch(
            f"/v1/comments/{comment_id}", json={"message": "Hijacked"}, headers=developer_headers
        )
        developer_delete = await client.delete(f"/v1/comments/{comment_id}", headers=developer_headers)
        listed = await client.get(f"/v1/tickets/{ticket_id}/comments", headers=tenant.reviewer_headers)

    assert posted.status_code == 201
    assert developer_edit.status_code == 403
    assert developer_edit.json()["error"]["message"] == "Not allowed to edit this comment"
    assert developer_delete.status_code == 403
    assert [comment["message"] for comment in listed.json()["data"]] == ["Looking into it"]


@pytest.mark.asyncio
async def test_history_of_deleted_ticket_stays_readable(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        ticket_id = await _create_ticket(client, tenant)
        deleted = await client.delete(f"/v1/tickets/{ticket_id}", headers=tenant.admin_headers)
        gone = await client.get(f"/v1/tickets/{ticket_id}", headers=tenant.admin_headers)
        ticket_history = await client.get(f"/v1/tickets/{ticket_id}/history", headers=tenant.admin_headers)
        history = await client.get(
            f"/v1/workspaces/{tenant.seeded.id}/history/TICKET/{ticket_id}",
            headers=tenant.admin_headers,
        )

    assert deleted.status_code == 204
    assert gone.status_code == 404
    assert ticket_history.status_code == 404
    assert history.status_code == 200
    assert history.json()["data"][-1]["action"] == "DELETE"


@pytest.mark.asyncio
async def test_capabilities_reflect_role_grants(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        response = await client.get(
            f"/v1/workspaces/{tenant.seeded.id}/capabilities", headers=tenant.reviewer_headers
        )

    data = response.json()["data"]
    assert data["role_name"] == "Reviewer"
    assert data["is_workspace_admin"] is False
    assert "TICKET:READ" in data["grants"]
    assert "TICKET:UPDATE" not in data["grants"]


@pytest.mark.asyncio
async def test_comment_author_still_needs_update_and_delete_grants(database: Database) -> None:
    tenant = await _tenant(database)

    async with _client(database) as client:
        ticket_id = await _create_ticket(client, tenant)
        posted = await client.post(
            f"/v1/tickets/{ticket_id}/comments",
            json={"message": "Reviewed"},
            headers=tenant.reviewer_headers,
        )
        comment_id = posted.json()["data"]["id"]
        edited = await client.patch(
            f"/v1/comments/{comment_id}", json={"message": "Edited"}, headers=tenant.reviewer_headers
        )
        deleted = await client.delete(f"/v1/comments/{comment_id}", headers=tenant.reviewer_headers)
        listed = await client.get(f"/v1/tickets/{ticket_id}/comments", headers=tenant.reviewer_headers)

    assert posted.status_code == 201
    assert edited.status_code == 403
    assert edited.json()["error"]["details"] == {"entity": "COMMENT", "operation": "UPDATE"}
    assert deleted.status_code == 403
    assert deleted.json()["error"]["details"] == {"entity": "COMMENT", "operation": "DELETE"}
    assert [comment["message"] for comment in listed.json()["data"]] == ["Reviewed"]
