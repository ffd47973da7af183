from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import AccessContext, get_db, get_timeout, require_permission
from tenantdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantdesk.apps.api.response import SuccessEnvelope, success_response
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.persistence.db import bounded
from tenantdesk.persistence.repos import memberships as memberships_repo
from tenantdesk.services.rbac.bulk import AssignmentReport, BulkAssignmentCoordinator


router = APIRouter(prefix="/workspaces/{workspace_id}", tags=["members"], responses=DEFAULT_ERROR_RESPONSES)


class BulkAssignRequest(BaseModel):
    # Parallel lists paired by index; shape is validated by the coordinator.
    subjects: list[str]
    grants: list[str]

    model_config = {"extra": "forbid"}


class AssignRoleRequest(BaseModel):
    role: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class UsersToRoleRequest(BaseModel):
    user_ids: list[str]

    model_config = {"extra": "forbid"}


class AssignedPair(BaseModel):
    user_id: str
    user_name: str
    role_id: str
    role_name: str


class AssignmentResponse(BaseModel):
    written: int
    pairs: list[AssignedPair]


class MemberResponse(BaseModel):
    user_id: str
    role_id: str


def _to_response(report: AssignmentReport) -> AssignmentResponse:
    return AssignmentResponse(
        written=report.written,
        pairs=[
            AssignedPair(
                user_id=pair.user_id,
                user_name=pair.user_name,
                role_id=pair.role_id,
                role_name=pair.role_name,
            )
            for pair in report.pairs
        ],
    )


@router.get("/members", response_model=SuccessEnvelope[list[MemberResponse]])
async def list_members(
    request: Request,
    access: AccessContext = Depends(require_permission(EntityType.USERROLE, Operation.READ)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    members = await bounded(
        memberships_repo.list_members(db, workspace_id=access.workspace.id),
        timeout_s=timeout_s,
        operation="membership.list",
    )
    data = [MemberResponse(user_id=member.user_id, role_id=member.role_id) for member in members]
    return success_response(request=request, data=data)


@router.post("/members/bulk", response_model=SuccessEnvelope[AssignmentResponse])
async def bulk_assign(
    request: Request,
    payload: BulkAssignRequest,
    access: AccessContext = Depends(require_permission(EntityType.USERROLE, Operation.CREATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    report = await BulkAssignmentCoordinator(db, timeout_s=timeout_s).assign(
        access.workspace.id,
        payload.subjects,
        payload.grants,
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(report))


@router.put("/members/{user_id}", response_model=SuccessEnvelope[AssignmentResponse])
async def assign_role(
    user_id: str,
    request: Request,
    payload: AssignRoleRequest,
    access: AccessContext = Depends(require_permission(EntityType.USERROLE, Operation.UPDATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    report = await BulkAssignmentCoordinator(db, timeout_s=timeout_s).assign_one(
        access.workspace.id,
        user_id,
        payload.role,
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(report))


@router.post("/roles/{role_ref}/users", response_model=SuccessEnvelope[AssignmentResponse])
async def add_users_to_role(
    role_ref: str,
    request: Request,
    payload: UsersToRoleRequest,
    access: AccessContext = Depends(require_permission(EntityType.USERROLE, Operation.CREATE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> dict:
    report = await BulkAssignmentCoordinator(db, timeout_s=timeout_s).add_users_to_role(
        access.workspace.id,
        role_ref,
        payload.user_ids,
        actor_id=access.principal.subject_id,
    )
    return success_response(request=request, data=_to_response(report))


@router.delete("/members/{user_id}", status_code=204)
async def remove_member(
    user_id: str,
    access: AccessContext = Depends(require_permission(EntityType.USERROLE, Operation.DELETE)),
    db: AsyncSession = Depends(get_db),
    timeout_s: float | None = Depends(get_timeout),
) -> Response:
    await BulkAssignmentCoordinator(db, timeout_s=timeout_s).remove_member(
        access.workspace.id,
        user_id,
        actor_id=access.principal.subject_id,
    )
    return Response(status_code=204)
