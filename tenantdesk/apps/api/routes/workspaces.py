from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import (
    AccessContext,
    Principal,
    get_db,
    get_timeout,
    require_permission,
    require_super,
)
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import SuccessEnvelope, success_response
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.services.workspaces import create_workspace


router = APIRouter(prefix="/workspaces", tags=["workspaces"], responses=DEFAULT_ERROR_RESPONSES)


class WorkspaceCreateRequest(BaseModel):
    name: str = Field(min_length=2)
    admin_id: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    admin_id: str
    created_by: str


class CapabilitiesResponse(BaseModel):
    subject_id: str
    workspace_id: str
    is_super: bool
    is_workspace_admin: bool
    role_id: str | None
    role_name: str | None
    grants: list[str]


def _to_response(workspace: Workspace) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        admin_id=workspace.admin_id,
        created_by=workspace.created_by,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[WorkspaceResponse])
async def create_workspace_route(
    request: Request,
    payload: WorkspaceCreateRequest,
    principal: Principal = Depends(require_super),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    workspace = await create_workspace(
        db,
        identity=principal.identity,
        name=payload.name,
        admin_id=payload.admin_id,
        timeout_s=timeout_s,
    )
    return success_response(request=request, data=_to_response(workspace))


@router.get("/{workspace_id}", response_model=SuccessEnvelope[WorkspaceResponse])
async def get_workspace(
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.WORKSPACE, Operation.READ)),
) -> dict:
    return success_response(request=request, data=_to_response(access.workspace))


@router.get("/{workspace_id}/capabilities", response_model=SuccessEnvelope[CapabilitiesResponse])
async def get_capabilities(
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.WORKSPACE, Operation.READ)),
) -> dict:
    # Lets clients hide actions the caller cannot perform.
    capabilities = access.capabilities
    payload = CapabilitiesResponse(
        subject_id=capabilities.subject_id,
        workspace_id=access.workspace.id,
        is_super=capabilities.is_super,
        is_workspace_admin=capabilities.is_workspace_admin,
        role_id=capabilities.role_id,
        role_name=capabilities.role_name,
        grants=sorted(f"{entity}:{op}" for entity, op in capabilities.grants),
    )
    return success_response(request=request, data=payload)
