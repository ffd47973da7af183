from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import AccessContext, get_db, get_timeout, require_permission
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import SuccessEnvelope, success_response
from tenantdesk.domain.models import HistoryEntry
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.persistence.db import bounded
from tenantdesk.services.audit import AuditLog


router = APIRouter(tags=["history"], responses=DEFAULT_ERROR_RESPONSES)


class HistoryEntryResponse(BaseModel):
    entity_type: str
    entity_id: str
    action: str
    field_changed: str
    old_value: str | None
    new_value: str | None
    changed_by: str
    changed_at: datetime


def to_history_response(entry: HistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        action=entry.action,
        field_changed=entry.field_changed,
        old_value=entry.old_value,
        new_value=entry.new_value,
        changed_by=entry.changed_by,
        changed_at=entry.changed_at,
    )


@router.get(
    "/workspaces/{workspace_id}/history/{entity_type}/{entity_id}",
    response_model=SuccessEnvelope[list[HistoryEntryResponse]],
)
async def entity_history(
    entity_type: EntityType,
    entity_id: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.HISTORY, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    # Works for deleted entities too; the trail has no foreign key to them.
    entries = await bounded(
        AuditLog(db).history(workspace_id=access.workspace.id, entity_type=entity_type, entity_id=entity_id),
        timeout_s=timeout_s,
        operation="history.list",
    )
    return success_response(request=request, data=[to_history_response(entry) for entry in entries])
