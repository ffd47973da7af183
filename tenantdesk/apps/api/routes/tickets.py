from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import AccessContext, get_db, get_timeout, require_permission
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import Page, SuccessEnvelope, success_response
from tenantdesk.apps.api.routes.history import HistoryEntryResponse, to_history_response
from tenantdesk.domain.models import Ticket
from tenantdesk.domain.vocab import EntityType, Operation, TicketPriority, TicketStatus
from tenantdesk.services.tickets import TicketService


router = APIRouter(tags=["tickets"], responses=DEFAULT_ERROR_RESPONSES)


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: TicketPriority
    ticket_type: str = Field(min_length=1)
    status: TicketStatus | None = None
    due_date: datetime | None = None
    assigned_to: str | None = None
    parent_id: str | None = None

    model_config = {"extra": "forbid"}


class TicketUpdateRequest(BaseModel):
    # Only fields present in the body are compared and written.
    title: str | None = None
    description: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    ticket_type: str | None = None
    due_date: datetime | None = None
    assigned_to: str | None = None
    parent_id: str | None = None

    model_config = {"extra": "forbid"}


class TicketResponse(BaseModel):
    id: str
    workspace_id: str
    title: str
    description: str
    status: str
    priority: str
    ticket_type: str
    assigned_to: str | None
    due_date: datetime | None
    parent_id: str | None
    created_by: str
    updated_by: str | None


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        workspace_id=ticket.workspace_id,
        title=ticket.title,
        description=ticket.description,
        status=ticket.status,
        priority=ticket.priority,
        ticket_type=ticket.ticket_type,
        assigned_to=ticket.assigned_to,
        due_date=ticket.due_date,
        parent_id=ticket.parent_id,
        created_by=ticket.created_by,
        updated_by=ticket.updated_by,
    )


@router.post(
    "/workspaces/{workspace_id}/tickets",
    status_code=201,
    response_model=SuccessEnvelope[TicketResponse],
)
async def create_ticket(
    request: Request,
    payload: TicketCreateRequest,
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.CREATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    ticket = await TicketService(db, timeout_s=timeout_s).create_ticket(
        access.workspace.id,
        actor_id=access.principal.subject_id,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        ticket_type=payload.ticket_type,
        status=payload.status,
        due_date=payload.due_date,
        assigned_to=payload.assigned_to,
        parent_id=payload.parent_id,
    )
    return success_response(request=request, data=_to_response(ticket))


@router.get("/workspaces/{workspace_id}/tickets", response_model=SuccessEnvelope[Page[TicketResponse]])
async def list_tickets(
    request: Request,
    status: TicketStatus | None = None,
    priority: TicketPriority | None = None,
    assignee: str | None = None,
    q: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    result = await TicketService(db, timeout_s=timeout_s).list_tickets(
        access.workspace.id,
        status=status.value if status else None,
        priority=priority.value if priority else None,
        assignee=assignee,
        query=q,
        page=page,
        page_size=page_size,
    )
    data = Page[TicketResponse](
        page=result.page,
        page_size=result.page_size,
        total=result.total,
        items=[_to_response(ticket) for ticket in result.items],
    )
    return success_response(request=request, data=data)


@router.get("/tickets/{ticket_id}", response_model=SuccessEnvelope[TicketResponse])
async def get_ticket(
    ticket_id: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    ticket = await TicketService(db, timeout_s=timeout_s).get_ticket(access.workspace.id, ticket_id)
    return success_response(request=request, data=_to_response(ticket))


@router.patch("/tickets/{ticket_id}", response_model=SuccessEnvelope[TicketResponse])
async def update_ticket(
    ticket_id: str,
    request: Request,
    payload: TicketUpdateRequest,
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    ticket = await TicketService(db, timeout_s=timeout_s).update_ticket(
        access.workspace.id,
        ticket_id,
        payload.model_dump(exclude_unset=True),
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(ticket))


@router.post("/tickets/{ticket_id}/close", response_model=SuccessEnvelope[TicketResponse])
async def close_ticket(
    ticket_id: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    ticket = await TicketService(db, timeout_s=timeout_s).close_ticket(
        access.workspace.id,
        ticket_id,
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(ticket))


@router.delete("/tickets/{ticket_id}", status_code=204)
async def delete_ticket(
    ticket_id: str,
    access: AccessContext = Depends(require_permission(EntityType.TICKET, Operation.DELETE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> Response:
    await TicketService(db, timeout_s=timeout_s).delete_ticket(
        access.workspace.id,
        ticket_id,
        actor_id=access.principal.subject_id,
    )
    return Response(status_code=204)


# Resolves the workspace through the ticket, so it 404s once the ticket is
# deleted; the workspace-scoped history route keeps serving the trail.
@router.get("/tickets/{ticket_id}/history", response_model=SuccessEnvelope[list[HistoryEntryResponse]])
async def ticket_history(
    ticket_id: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.HISTORY, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    entries = await TicketService(db, timeout_s=timeout_s).history(access.workspace.id, ticket_id)
    return success_response(request=request, data=[to_history_response(entry) for entry in entries])
