from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import AccessContext, get_db, get_timeout, require_permission
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import SuccessEnvelope, success_response
from tenantdesk.domain.models import Comment
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.services.comments import CommentService


router = APIRouter(tags=["comments"], responses=DEFAULT_ERROR_RESPONSES)


class CommentCreateRequest(BaseModel):
    message: str = Field(min_length=1)
    parent_id: str | None = None

    model_config = {"extra": "forbid"}


class CommentUpdateRequest(BaseModel):
    message: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class CommentResponse(BaseModel):
    id: str
    ticket_id: str
    user_id: str
    message: str
    parent_id: str | None
    created_at: datetime | None


def _to_response(comment: Comment) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        ticket_id=comment.ticket_id,
        user_id=comment.user_id,
        message=comment.message,
        parent_id=comment.parent_id,
        created_at=comment.created_at,
    )


@router.post("/tickets/{ticket_id}/comments", status_code=201, response_model=SuccessEnvelope[CommentResponse])
async def create_comment(
    ticket_id: str,
    request: Request,
    payload: CommentCreateRequest,
    access: AccessContext = Depends(require_permission(EntityType.COMMENT, Operation.CREATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    comment = await CommentService(db, timeout_s=timeout_s).create_comment(
        ticket_id,
        actor_id=access.principal.subject_id,
        message=payload.message,
        parent_id=payload.parent_id,
    )
    await db.refresh(comment)
    return success_response(request=request, data=_to_response(comment))


@router.get("/tickets/{ticket_id}/comments", response_model=SuccessEnvelope[list[CommentResponse]])
async def list_comments(
    ticket_id: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.COMMENT, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    comments = await CommentService(db, timeout_s=timeout_s).list_comments(ticket_id)
    return success_response(request=request, data=[_to_response(comment) for comment in comments])


# The gate checks the UPDATE or DELETE grant; the service then
# requires the author or a moderator.
@router.patch("/comments/{comment_id}", response_model=SuccessEnvelope[CommentResponse])
async def update_comment(
    comment_id: str,
    request: Request,
    payload: CommentUpdateRequest,
    access: AccessContext = Depends(require_permission(EntityType.COMMENT, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    comment = await CommentService(db, timeout_s=timeout_s).update_comment(
        comment_id,
        capabilities=access.capabilities,
        message=payload.message,
    )
    return success_response(request=request, data=_to_response(comment))


@router.delete("/comments/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: str,
    access: AccessContext = Depends(require_permission(EntityType.COMMENT, Operation.DELETE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> Response:
    await CommentService(db, timeout_s=timeout_s).delete_comment(comment_id, capabilities=access.capabilities)
    return Response(status_code=204)
