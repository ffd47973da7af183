from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import AccessContext, get_db, get_timeout, require_permission
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import SuccessEnvelope, success_response
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.services.rbac.roles import RoleStore, RoleView


router = APIRouter(
    prefix="/workspaces/{workspace_id}/roles",
    tags=["roles"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class PermissionGrant(BaseModel):
    entity: EntityType
    operation: Operation


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=2)
    description: str | None = None
    permissions: list[PermissionGrant] = Field(min_length=1)

    model_config = {"extra": "forbid"}


class RoleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    description: str | None = None
    # Replaces the whole grant set when present.
    permissions: list[PermissionGrant] | None = None

    model_config = {"extra": "forbid"}


class RoleGrantRequest(BaseModel):
    permissions: list[PermissionGrant] = Field(min_length=1)

    model_config = {"extra": "forbid"}


class RoleResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: str | None
    is_administrative: bool
    permissions: list[PermissionGrant]


def _pairs(grants: list[PermissionGrant]) -> list[tuple[str, str]]:
    return [(grant.entity.value, grant.operation.value) for grant in grants]


def _to_response(view: RoleView) -> RoleResponse:
    return RoleResponse(
        id=view.id,
        workspace_id=view.workspace_id,
        name=view.name,
        description=view.description,
        is_administrative=view.is_administrative,
        permissions=[PermissionGrant(entity=entity, operation=op) for entity, op in view.grants],
    )


@router.get("", response_model=SuccessEnvelope[list[RoleResponse]])
async def list_roles(
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    views = await RoleStore(db, timeout_s=timeout_s).list_roles(access.workspace.id)
    return success_response(request=request, data=[_to_response(view) for view in views])


@router.post("", status_code=201, response_model=SuccessEnvelope[RoleResponse])
async def create_role(
    request: Request,
    payload: RoleCreateRequest,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.CREATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    view = await RoleStore(db, timeout_s=timeout_s).create_role(
        access.workspace.id,
        payload.name,
        payload.description,
        _pairs(payload.permissions),
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(view))


@router.get("/{role_ref}", response_model=SuccessEnvelope[RoleResponse])
async def get_role(
    role_ref: str,
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    store = RoleStore(db, timeout_s=timeout_s)
    role = await store.get_role(access.workspace.id, role_ref)
    return success_response(request=request, data=_to_response(await store.view(role)))


@router.patch("/{role_ref}", response_model=SuccessEnvelope[RoleResponse])
async def update_role(
    role_ref: str,
    request: Request,
    payload: RoleUpdateRequest,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    view = await RoleStore(db, timeout_s=timeout_s).update_role(
        access.workspace.id,
        role_ref,
        actor_id=access.principal.subject_id,
        name=payload.name,
        description=payload.description,
        permissions=_pairs(payload.permissions) if payload.permissions is not None else None,
    )
    return success_response(request=request, data=_to_response(view))


@router.post("/{role_ref}/grants", response_model=SuccessEnvelope[RoleResponse])
async def grant_permissions(
    role_ref: str,
    request: Request,
    payload: RoleGrantRequest,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    view = await RoleStore(db, timeout_s=timeout_s).grant(
        access.workspace.id,
        role_ref,
        _pairs(payload.permissions),
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(view))


@router.delete("/{role_ref}", status_code=204)
async def delete_role(
    role_ref: str,
    access: AccessContext = Depends(require_permission(EntityType.ROLE, Operation.DELETE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> Response:
    await RoleStore(db, timeout_s=timeout_s).delete_role(
        access.workspace.id,
        role_ref,
        actor_id=access.principal.subject_id,
    )
    return Response(status_code=204)
