from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import NotFoundError, ValidationError
from tenantdesk.domain.models import Role, Workspace
from tenantdesk.persistence.db import bounded
from tenantdesk.persistence.repos import comments as comments_repo
from tenantdesk.persistence.repos import memberships as memberships_repo
from tenantdesk.persistence.repos import tickets as tickets_repo
from tenantdesk.persistence.repos import workspaces as workspaces_repo


ReferenceKind = Literal["workspace", "ticket", "comment"]

# Inbound parameter names in resolution priority order.
_REFERENCE_PARAMS: tuple[tuple[str, ReferenceKind], ...] = (
    ("workspace_id", "workspace"),
    ("ticket_id", "ticket"),
    ("comment_id", "comment"),
)


@dataclass(frozen=True)
class WorkspaceReference:
    kind: ReferenceKind
    value: str


def reference_from_params(params: Mapping[str, Any]) -> WorkspaceReference:
    """Pick the workspace reference carried by a request.

    An explicit workspace id wins over a ticket id, which wins over a comment
    id. Blank values count as absent.
    """
    for key, kind in _REFERENCE_PARAMS:
        raw = params.get(key)
        if raw is None:
            continue
        value = str(raw).strip()
        if value:
            return WorkspaceReference(kind=kind, value=value)
    raise ValidationError(
        "Workspace reference is required",
        details={"expected": [key for key, _ in _REFERENCE_PARAMS]},
    )


class MembershipResolver:
    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s

    async def resolve_workspace(self, reference: WorkspaceReference) -> str:
        # Bounded chain: comment -> ticket -> workspace, never deeper.
        if reference.kind == "workspace":
            return reference.value
        ticket_id = reference.value
        if reference.kind == "comment":
            ticket_id = await bounded(
                comments_repo.get_comment_ticket_id(self.session, reference.value),
                timeout_s=self.timeout_s,
                operation="resolve.comment",
            )
            if ticket_id is None:
                raise NotFoundError("Comment not found", details={"comment_id": [reference.value]})
        workspace_id = await bounded(
            tickets_repo.get_ticket_workspace_id(self.session, ticket_id),
            timeout_s=self.timeout_s,
            operation="resolve.ticket",
        )
        if workspace_id is None:
            raise NotFoundError("Ticket not found", details={"ticket_id": [ticket_id]})
        return workspace_id

    async def get_workspace(self, workspace_id: str) -> Workspace:
        workspace = await bounded(
            workspaces_repo.get_workspace(self.session, workspace_id),
            timeout_s=self.timeout_s,
            operation="resolve.workspace",
        )
        if workspace is None:
            raise NotFoundError("Workspace not found", details={"workspace_id": [workspace_id]})
        return workspace

    async def membership_of(self, user_id: str, workspace_id: str) -> Role | None:
        return await bounded(
            memberships_repo.get_membership_role(self.session, workspace_id=workspace_id, user_id=user_id),
            timeout_s=self.timeout_s,
            operation="resolve.membership",
        )

    async def is_member(self, user_id: str, workspace_id: str) -> bool:
        return await self.membership_of(user_id, workspace_id) is not None
