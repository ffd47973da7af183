from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.config import get_settings
from tenantdesk.core.errors import NotFoundError, ValidationError
from tenantdesk.domain.models import HistoryEntry, Ticket
from tenantdesk.domain.vocab import (
    EntityType,
    HistoryAction,
    TicketStatus,
    parse_ticket_priority,
    parse_ticket_status,
)
from tenantdesk.persistence.db import bounded, unit_of_work
from tenantdesk.persistence.repos import comments as comments_repo
from tenantdesk.persistence.repos import memberships as memberships_repo
from tenantdesk.persistence.repos import tickets as tickets_repo
from tenantdesk.services.audit import AuditLog, diff


logger = logging.getLogger(__name__)

TRACKED_TICKET_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "assigned_to",
    "due_date",
    "parent_id",
    "ticket_type",
)

# Upper bound on parent hops when checking for cycles.
_MAX_ANCESTRY_DEPTH = 1000


@dataclass(frozen=True)
class TicketPage:
    page: int
    page_size: int
    total: int
    items: list[Ticket]


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _required_text(field: str, value: Any) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(f"{field} is required", details={field: [value]})
    return text


class TicketService:
    """Ticket mutations and their field-level history.

    Each mutation and its history rows share one unit of work, so a failed
    commit leaves neither behind.
    """

    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s
        self.audit = AuditLog(session)

    async def get_ticket(self, workspace_id: str, ticket_id: str) -> Ticket:
        ticket = await bounded(
            tickets_repo.get_ticket(self.session, ticket_id),
            timeout_s=self.timeout_s,
            operation="ticket.get",
        )
        if ticket is None or ticket.workspace_id != workspace_id:
            raise NotFoundError("Ticket not found", details={"ticket_id": [ticket_id]})
        return ticket

    async def list_tickets(
        self,
        workspace_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        assignee: str | None = None,
        query: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> TicketPage:
        settings = get_settings()
        size = page_size or settings.tickets_default_page_size
        size = max(1, min(int(size), settings.tickets_max_page_size))
        page = max(1, int(page))
        total, items = await bounded(
            tickets_repo.list_tickets(
                self.session,
                workspace_id=workspace_id,
                status=parse_ticket_status(status).value if status else None,
                priority=parse_ticket_priority(priority).value if priority else None,
                assignee=assignee,
                query=query,
                offset=(page - 1) * size,
                limit=size,
            ),
            timeout_s=self.timeout_s,
            operation="ticket.list",
        )
        return TicketPage(page=page, page_size=size, total=total, items=items)

    async def _check_parent(self, workspace_id: str, parent_id: str, *, ticket_id: str | None = None) -> None:
        if ticket_id is not None and parent_id == ticket_id:
            raise ValidationError("A ticket cannot be its own parent", details={"parent_id": [parent_id]})
        parent_workspace = await bounded(
            tickets_repo.get_ticket_workspace_id(self.session, parent_id),
            timeout_s=self.timeout_s,
            operation="ticket.parent",
        )
        if parent_workspace != workspace_id:
            raise ValidationError(
                "Invalid parent ticket for this workspace",
                details={"parent_id": [parent_id]},
            )
        if ticket_id is None:
            return
        # Walk up from the proposed parent; meeting the ticket itself means a cycle.
        cursor: str | None = parent_id
        for _ in range(_MAX_ANCESTRY_DEPTH):
            cursor = await bounded(
                tickets_repo.get_parent_id(self.session, cursor),
                timeout_s=self.timeout_s,
                operation="ticket.ancestry",
            )
            if cursor is None:
                return
            if cursor == ticket_id:
                raise ValidationError(
                    "A ticket cannot be parented under one of its descendants",
                    details={"parent_id": [parent_id]},
                )
        raise ValidationError("Ticket hierarchy is too deep", details={"parent_id": [parent_id]})

    async def _check_assignee(self, workspace_id: str, user_id: str) -> None:
        membership = await bounded(
            memberships_repo.get_membership(self.session, workspace_id=workspace_id, user_id=user_id),
            timeout_s=self.timeout_s,
            operation="ticket.assignee",
        )
        if membership is None:
            raise ValidationError(
                "Assignee is not a member of this workspace",
                details={"assigned_to": [user_id]},
            )

    async def create_ticket(
        self,
        workspace_id: str,
        *,
        actor_id: str,
        title: str,
        description: str,
        priority: str,
        ticket_type: str,
        status: str | None = None,
        due_date: datetime | None = None,
        assigned_to: str | None = None,
        parent_id: str | None = None,
    ) -> Ticket:
        values: dict[str, Any] = {
            "title": _required_text("title", title),
            "description": _required_text("description", description),
            "priority": parse_ticket_priority(priority).value,
            "ticket_type": _required_text("ticket_type", ticket_type),
            "status": parse_ticket_status(status or TicketStatus.OPEN).value,
            "due_date": due_date,
            # Unassigned tickets default to their creator.
            "assigned_to": assigned_to or actor_id,
            "parent_id": parent_id or None,
        }
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="ticket.create"):
            if values["parent_id"]:
                await self._check_parent(workspace_id, values["parent_id"])
            if assigned_to:
                await self._check_assignee(workspace_id, assigned_to)
            ticket = Ticket(
                id=uuid4().hex,
                workspace_id=workspace_id,
                created_by=actor_id,
                updated_by=None,
                **values,
            )
            self.session.add(ticket)
            await self.session.flush()
            await self.audit.record(
                workspace_id=workspace_id,
                entity_type=EntityType.TICKET,
                entity_id=ticket.id,
                change_set=diff({}, values, TRACKED_TICKET_FIELDS),
                actor_id=actor_id,
                action=HistoryAction.CREATE,
            )
        logger.info("ticket_created workspace_id=%s ticket_id=%s actor_id=%s", workspace_id, ticket.id, actor_id)
        return ticket

    def _normalize_patch(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(changes) - set(TRACKED_TICKET_FIELDS))
        if unknown:
            raise ValidationError("Unsupported ticket fields", details={"fields": unknown})
        patch = {field: _plain(value) for field, value in changes.items()}
        for field in ("title", "description", "ticket_type"):
            if field in patch:
                patch[field] = _required_text(field, patch[field])
        if "status" in patch:
            patch["status"] = parse_ticket_status(patch["status"]).value
        if "priority" in patch:
            patch["priority"] = parse_ticket_priority(patch["priority"]).value
        for field in ("assigned_to", "parent_id"):
            if field in patch and not patch[field]:
                patch[field] = None
        return patch

    async def update_ticket(
        self,
        workspace_id: str,
        ticket_id: str,
        changes: Mapping[str, Any],
        *,
        actor_id: str,
    ) -> Ticket:
        patch = self._normalize_patch(changes)
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="ticket.update"):
            ticket = await self.get_ticket(workspace_id, ticket_id)
            change_set = diff(ticket, patch, TRACKED_TICKET_FIELDS)
            changed = {change.field for change in change_set}
            if "parent_id" in changed and patch["parent_id"]:
                await self._check_parent(workspace_id, patch["parent_id"], ticket_id=ticket.id)
            if "assigned_to" in changed and patch["assigned_to"]:
                await self._check_assignee(workspace_id, patch["assigned_to"])
            for field in changed:
                setattr(ticket, field, patch[field])
            if change_set:
                ticket.updated_by = actor_id
                ticket.updated_at = datetime.now(timezone.utc)
                await self.session.flush()
                await self.audit.record(
                    workspace_id=workspace_id,
                    entity_type=EntityType.TICKET,
                    entity_id=ticket.id,
                    change_set=change_set,
                    actor_id=actor_id,
                    action=HistoryAction.UPDATE,
                )
        logger.info(
            "ticket_updated workspace_id=%s ticket_id=%s fields=%s actor_id=%s",
            workspace_id,
            ticket.id,
            ",".join(sorted(changed)) or "-",
            actor_id,
        )
        return ticket

    async def close_ticket(self, workspace_id: str, ticket_id: str, *, actor_id: str) -> Ticket:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="ticket.close"):
            ticket = await self.get_ticket(workspace_id, ticket_id)
            previous = ticket.status
            if previous == TicketStatus.CLOSED.value:
                return ticket
            ticket.status = TicketStatus.CLOSED.value
            ticket.updated_by = actor_id
            ticket.updated_at = datetime.now(timezone.utc)
            await self.session.flush()
            await self.audit.record_lifecycle(
                workspace_id=workspace_id,
                entity_type=EntityType.TICKET,
                entity_id=ticket.id,
                actor_id=actor_id,
                action=HistoryAction.CLOSE,
                old_value=previous,
                new_value=TicketStatus.CLOSED.value,
            )
        logger.info("ticket_closed workspace_id=%s ticket_id=%s actor_id=%s", workspace_id, ticket.id, actor_id)
        return ticket

    async def _subtree_ids(self, root_id: str) -> list[str]:
        ids = [root_id]
        frontier = [root_id]
        while frontier:
            found = await bounded(
                tickets_repo.list_child_ids(self.session, frontier),
                timeout_s=self.timeout_s,
                operation="ticket.children",
            )
            children = [child for child in found if child not in ids]
            ids.extend(children)
            frontier = children
        return ids

    async def delete_ticket(self, workspace_id: str, ticket_id: str, *, actor_id: str) -> list[str]:
        """Hard-delete a ticket, its subtasks and all of their comments.

        Every deleted ticket receives a DELETE marker in history. Prior history
        is kept unless ``HISTORY_PURGE_ON_DELETE`` is enabled, in which case it
        is removed in the same transaction before the markers are written.
        """
        purge = get_settings().history_purge_on_delete
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="ticket.delete"):
            ticket = await self.get_ticket(workspace_id, ticket_id)
            ticket_ids = await self._subtree_ids(ticket.id)
            await comments_repo.delete_ticket_comments(self.session, ticket_ids=ticket_ids)
            await tickets_repo.delete_tickets(self.session, workspace_id=workspace_id, ticket_ids=ticket_ids)
            if purge:
                await self.audit.purge(
                    workspace_id=workspace_id,
                    entity_type=EntityType.TICKET,
                    entity_ids=ticket_ids,
                    actor_id=actor_id,
                )
            for deleted_id in ticket_ids:
                await self.audit.record_lifecycle(
                    workspace_id=workspace_id,
                    entity_type=EntityType.TICKET,
                    entity_id=deleted_id,
                    actor_id=actor_id,
                    action=HistoryAction.DELETE,
                )
        logger.info(
            "ticket_deleted workspace_id=%s ticket_id=%s removed=%d actor_id=%s",
            workspace_id,
            ticket_id,
            len(ticket_ids),
            actor_id,
        )
        return ticket_ids

    async def history(self, workspace_id: str, ticket_id: str) -> list[HistoryEntry]:
        # No existence check: callers that already know the workspace can read a
        # deleted ticket's trail here. The ticket-addressed route cannot, since it
        # resolves the workspace through the ticket row.
        return await bounded(
            self.audit.history(
                workspace_id=workspace_id,
                entity_type=EntityType.TICKET,
                entity_id=ticket_id,
            ),
            timeout_s=self.timeout_s,
            operation="ticket.history",
        )
