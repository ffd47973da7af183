from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import ForbiddenError, NotFoundError, ValidationError
from tenantdesk.domain.models import Comment
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.persistence.db import bounded, unit_of_work
from tenantdesk.persistence.repos import comments as comments_repo
from tenantdesk.persistence.repos import tickets as tickets_repo
from tenantdesk.services.rbac.gate import CapabilitySet


logger = logging.getLogger(__name__)


def _message(value: str | None) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError("Message is required", details={"message": [value]})
    return text


def can_moderate(comment: Comment, capabilities: CapabilitySet, operation: Operation) -> bool:
    # The operation grant comes first; past it, authors act on their own comments
    # and moderators need COMMENT:MANAGE or workspace authority.
    if not capabilities.allows(EntityType.COMMENT, operation):
        return False
    if comment.user_id == capabilities.subject_id:
        return True
    if capabilities.is_super or capabilities.is_workspace_admin:
        return True
    return (EntityType.COMMENT.value, Operation.MANAGE.value) in capabilities.grants


class CommentService:
    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s

    async def _ticket_workspace(self, ticket_id: str) -> str:
        workspace_id = await bounded(
            tickets_repo.get_ticket_workspace_id(self.session, ticket_id),
            timeout_s=self.timeout_s,
            operation="comment.ticket",
        )
        if workspace_id is None:
            raise NotFoundError("Ticket not found", details={"ticket_id": [ticket_id]})
        return workspace_id

    async def get_comment(self, workspace_id: str, comment_id: str) -> Comment:
        comment = await bounded(
            comments_repo.get_comment(self.session, comment_id),
            timeout_s=self.timeout_s,
            operation="comment.get",
        )
        if comment is None or comment.workspace_id != workspace_id:
            raise NotFoundError("Comment not found", details={"comment_id": [comment_id]})
        return comment

    async def list_comments(self, ticket_id: str) -> list[Comment]:
        await self._ticket_workspace(ticket_id)
        return await bounded(
            comments_repo.list_ticket_comments(self.session, ticket_id=ticket_id),
            timeout_s=self.timeout_s,
            operation="comment.list",
        )

    async def create_comment(
        self,
        ticket_id: str,
        *,
        actor_id: str,
        message: str,
        parent_id: str | None = None,
    ) -> Comment:
        text = _message(message)
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="comment.create"):
            workspace_id = await self._ticket_workspace(ticket_id)
            if parent_id:
                parent = await bounded(
                    comments_repo.get_comment(self.session, parent_id),
                    timeout_s=self.timeout_s,
                    operation="comment.parent",
                )
                if parent is None or parent.ticket_id != ticket_id:
                    raise ValidationError(
                        "Parent comment does not belong to this ticket",
                        details={"parent_id": [parent_id]},
                    )
            comment = Comment(
                id=uuid4().hex,
                workspace_id=workspace_id,
                ticket_id=ticket_id,
                user_id=actor_id,
                message=text,
                parent_id=parent_id or None,
            )
            self.session.add(comment)
        logger.info("comment_created ticket_id=%s comment_id=%s actor_id=%s", ticket_id, comment.id, actor_id)
        return comment

    async def update_comment(
        self,
        comment_id: str,
        *,
        capabilities: CapabilitySet,
        message: str,
    ) -> Comment:
        text = _message(message)
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="comment.update"):
            comment = await self.get_comment(capabilities.workspace_id or "", comment_id)
            if not can_moderate(comment, capabilities, Operation.UPDATE):
                raise ForbiddenError("Not allowed to edit this comment")
            comment.message = text
            comment.updated_at = datetime.now(timezone.utc)
        return comment

    async def delete_comment(self, comment_id: str, *, capabilities: CapabilitySet) -> None:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="comment.delete"):
            comment = await self.get_comment(capabilities.workspace_id or "", comment_id)
            if not can_moderate(comment, capabilities, Operation.DELETE):
                raise ForbiddenError("Not allowed to delete this comment")
            # Replies go with the comment they answer.
            ids = [comment.id]
            frontier = [comment.id]
            while frontier:
                frontier = await bounded(
                    comments_repo.list_reply_ids(self.session, frontier),
                    timeout_s=self.timeout_s,
                    operation="comment.replies",
                )
                ids.extend(frontier)
            await comments_repo.delete_comments(self.session, workspace_id=comment.workspace_id, comment_ids=ids)
        logger.info(
            "comment_deleted comment_id=%s replies=%d actor_id=%s",
            comment_id,
            len(ids) - 1,
            capabilities.subject_id,
        )
