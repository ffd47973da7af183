from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import ConflictError, NotFoundError, ValidationError
from tenantdesk.domain.models import Role
from tenantdesk.domain.vocab import (
    LEGACY_ADMIN_ROLE_NAME,
    EntityType,
    HistoryAction,
    permission_key,
)
from tenantdesk.persistence.db import bounded, unit_of_work
from tenantdesk.persistence.repos import roles as roles_repo
from tenantdesk.services.audit import AuditLog, FieldChange, diff
from tenantdesk.services.rbac.catalog import PermissionCatalog


logger = logging.getLogger(__name__)

_TRACKED_ROLE_FIELDS = ("name", "description")


@dataclass(frozen=True)
class RoleView:
    id: str
    workspace_id: str
    name: str
    description: str | None
    is_administrative: bool
    grants: tuple[tuple[str, str], ...]


def is_administrative_role(role: Role) -> bool:
    return bool(role.is_administrative) or role.name.strip().upper() == LEGACY_ADMIN_ROLE_NAME


def normalize_grants(grants: Iterable[tuple[str, str]] | None) -> tuple[tuple[str, str], ...]:
    if not grants:
        return ()
    return tuple(sorted({permission_key(entity, op) for entity, op in grants}))


def _grants_text(grants: Iterable[tuple[str, str]]) -> str:
    return ",".join(f"{entity}:{op}" for entity, op in sorted(grants))


def _validate_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if len(cleaned) < 2:
        raise ValidationError("Role name must be at least 2 characters", details={"name": [name]})
    return cleaned


class RoleStore:
    """Per-workspace roles and their permission grants.

    Public methods are atomic: each commits its own unit of work, history
    included. ``stage_role`` is the non-committing building block used when
    role creation is part of a larger transaction such as workspace setup.
    """

    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s
        self.catalog = PermissionCatalog(session, timeout_s=timeout_s)
        self.audit = AuditLog(session)

    async def get_role(self, workspace_id: str, role_ref: str) -> Role:
        role = await bounded(
            roles_repo.get_role(self.session, workspace_id=workspace_id, role_id=role_ref),
            timeout_s=self.timeout_s,
            operation="role.get",
        )
        if role is None:
            role = await bounded(
                roles_repo.get_role_by_name(self.session, workspace_id=workspace_id, name=role_ref),
                timeout_s=self.timeout_s,
                operation="role.get_by_name",
            )
        if role is None:
            raise NotFoundError("Role not found in workspace", details={"role": [role_ref]})
        return role

    async def view(self, role: Role) -> RoleView:
        grants = await bounded(
            roles_repo.list_grants(self.session, role_ids=[role.id]),
            timeout_s=self.timeout_s,
            operation="role.grants",
        )
        return RoleView(
            id=role.id,
            workspace_id=role.workspace_id,
            name=role.name,
            description=role.description,
            is_administrative=is_administrative_role(role),
            grants=tuple(grants.get(role.id, [])),
        )

    async def list_roles(self, workspace_id: str) -> list[RoleView]:
        roles = await bounded(
            roles_repo.list_roles(self.session, workspace_id=workspace_id),
            timeout_s=self.timeout_s,
            operation="role.list",
        )
        grants = await bounded(
            roles_repo.list_grants(self.session, role_ids=[role.id for role in roles]),
            timeout_s=self.timeout_s,
            operation="role.grants",
        )
        return [
            RoleView(
                id=role.id,
                workspace_id=role.workspace_id,
                name=role.name,
                description=role.description,
                is_administrative=is_administrative_role(role),
                grants=tuple(grants.get(role.id, [])),
            )
            for role in roles
        ]

    async def _ensure_name_free(self, workspace_id: str, name: str, *, exclude_role_id: str | None = None) -> None:
        existing = await bounded(
            roles_repo.get_role_by_name(self.session, workspace_id=workspace_id, name=name),
            timeout_s=self.timeout_s,
            operation="role.get_by_name",
        )
        if existing is not None and existing.id != exclude_role_id:
            logger.warning("role_name_conflict workspace_id=%s name=%s", workspace_id, name)
            raise ConflictError(
                "Role name already exists in this workspace",
                details={"name": [name]},
            )

    async def _flush_role(self, workspace_id: str, name: str) -> None:
        # The unique constraint is the final word when two writers race on a name.
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "Role name already exists in this workspace",
                details={"name": [name]},
            ) from exc

    async def _write_grants(self, role_id: str, grants: tuple[tuple[str, str], ...]) -> None:
        permission_ids = await self.catalog.ensure_many(grants)
        await roles_repo.insert_grants(self.session, role_id=role_id, permission_ids=permission_ids)

    async def stage_role(
        self,
        workspace_id: str,
        name: str,
        description: str | None,
        grants: Iterable[tuple[str, str]] | None,
        *,
        actor_id: str,
        is_administrative: bool = False,
    ) -> Role:
        cleaned = _validate_name(name)
        normalized = normalize_grants(grants)
        await self._ensure_name_free(workspace_id, cleaned)
        role = Role(
            id=uuid4().hex,
            workspace_id=workspace_id,
            name=cleaned,
            description=description,
            is_administrative=is_administrative,
        )
        self.session.add(role)
        await self._flush_role(workspace_id, cleaned)
        await self._write_grants(role.id, normalized)
        await self.audit.record_lifecycle(
            workspace_id=workspace_id,
            entity_type=EntityType.ROLE,
            entity_id=role.id,
            actor_id=actor_id,
            action=HistoryAction.CREATE,
        )
        return role

    async def create_role(
        self,
        workspace_id: str,
        name: str,
        description: str | None,
        grants: Iterable[tuple[str, str]] | None,
        *,
        actor_id: str,
        is_administrative: bool = False,
    ) -> RoleView:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="role.create"):
            role = await self.stage_role(
                workspace_id,
                name,
                description,
                grants,
                actor_id=actor_id,
                is_administrative=is_administrative,
            )
        logger.info("role_created workspace_id=%s role_id=%s actor_id=%s", workspace_id, role.id, actor_id)
        return await self.view(role)

    async def _record_grant_change(
        self,
        role: Role,
        before: Iterable[tuple[str, str]],
        after: Iterable[tuple[str, str]],
        *,
        actor_id: str,
    ) -> None:
        old_text = _grants_text(before)
        new_text = _grants_text(after)
        if old_text == new_text:
            return
        await self.audit.record(
            workspace_id=role.workspace_id,
            entity_type=EntityType.ROLE,
            entity_id=role.id,
            change_set=(FieldChange(field="permissions", old_value=old_text, new_value=new_text),),
            actor_id=actor_id,
            action=HistoryAction.UPDATE,
        )

    async def _current_grants(self, role_id: str) -> list[tuple[str, str]]:
        grants = await bounded(
            roles_repo.list_grants(self.session, role_ids=[role_id]),
            timeout_s=self.timeout_s,
            operation="role.grants",
        )
        return list(grants.get(role_id, []))

    async def grant(
        self,
        workspace_id: str,
        role_ref: str,
        permissions: Iterable[tuple[str, str]],
        *,
        actor_id: str,
    ) -> RoleView:
        normalized = normalize_grants(permissions)
        if not normalized:
            raise ValidationError("permissions array is required", details={"permissions": []})
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="role.grant"):
            role = await self.get_role(workspace_id, role_ref)
            before = await self._current_grants(role.id)
            await self._write_grants(role.id, normalized)
            await self._record_grant_change(role, before, set(before) | set(normalized), actor_id=actor_id)
        return await self.view(role)

    async def stage_replace_grants(
        self,
        role: Role,
        permissions: Iterable[tuple[str, str]],
        *,
        actor_id: str,
    ) -> None:
        normalized = normalize_grants(permissions)
        before = await self._current_grants(role.id)
        await roles_repo.delete_grants(self.session, role_id=role.id)
        await self._write_grants(role.id, normalized)
        await self._record_grant_change(role, before, normalized, actor_id=actor_id)

    async def replace_grants(
        self,
        workspace_id: str,
        role_ref: str,
        permissions: Iterable[tuple[str, str]],
        *,
        actor_id: str,
    ) -> RoleView:
        # Delete and re-insert commit together; readers never see a partial grant set.
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="role.replace_grants"):
            role = await self.get_role(workspace_id, role_ref)
            await self.stage_replace_grants(role, permissions, actor_id=actor_id)
        return await self.view(role)

    async def update_role(
        self,
        workspace_id: str,
        role_ref: str,
        *,
        actor_id: str,
        name: str | None = None,
        description: str | None = None,
        permissions: Iterable[tuple[str, str]] | None = None,
    ) -> RoleView:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="role.update"):
            role = await self.get_role(workspace_id, role_ref)
            patch: dict[str, str | None] = {}
            if name is not None:
                patch["name"] = _validate_name(name)
                await self._ensure_name_free(workspace_id, patch["name"], exclude_role_id=role.id)
            if description is not None:
                patch["description"] = description
            changes = diff(role, patch, _TRACKED_ROLE_FIELDS)
            for change in changes:
                setattr(role, change.field, patch[change.field])
            if changes:
                await self._flush_role(workspace_id, role.name)
                await self.audit.record(
                    workspace_id=workspace_id,
                    entity_type=EntityType.ROLE,
                    entity_id=role.id,
                    change_set=changes,
                    actor_id=actor_id,
                    action=HistoryAction.UPDATE,
                )
            if permissions is not None:
                await self.stage_replace_grants(role, permissions, actor_id=actor_id)
        return await self.view(role)

    async def delete_role(self, workspace_id: str, role_ref: str, *, actor_id: str) -> None:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="role.delete"):
            role = await self.get_role(workspace_id, role_ref)
            in_use = await bounded(
                roles_repo.count_role_memberships(self.session, workspace_id=workspace_id, role_id=role.id),
                timeout_s=self.timeout_s,
                operation="role.memberships",
            )
            if in_use:
                logger.warning(
                    "role_delete_conflict workspace_id=%s role_id=%s memberships=%d",
                    workspace_id,
                    role.id,
                    in_use,
                )
                raise ConflictError(
                    "Cannot delete a role that is assigned to users",
                    details={"role_id": role.id, "memberships": in_use},
                )
            if is_administrative_role(role):
                await self._guard_administrative_delete(workspace_id, role)
            await self.audit.record_lifecycle(
                workspace_id=workspace_id,
                entity_type=EntityType.ROLE,
                entity_id=role.id,
                actor_id=actor_id,
                action=HistoryAction.DELETE,
            )
            await roles_repo.delete_role(self.session, workspace_id=workspace_id, role_id=role.id)
        logger.info("role_deleted workspace_id=%s role_id=%s actor_id=%s", workspace_id, role.id, actor_id)

    async def _guard_administrative_delete(self, workspace_id: str, role: Role) -> None:
        admin_assignments = await bounded(
            roles_repo.count_administrative_memberships(self.session, workspace_id=workspace_id),
            timeout_s=self.timeout_s,
            operation="role.admin_memberships",
        )
        if admin_assignments:
            raise ConflictError(
                "Cannot delete an administrator role while administrator assignments exist",
                details={"role_id": role.id, "memberships": admin_assignments},
            )
        admin_roles = await bounded(
            roles_repo.count_administrative_roles(self.session, workspace_id=workspace_id),
            timeout_s=self.timeout_s,
            operation="role.admin_roles",
        )
        if admin_roles <= 1:
            raise ConflictError(
                "Cannot delete the last administrator role of the workspace",
                details={"role_id": role.id},
            )
