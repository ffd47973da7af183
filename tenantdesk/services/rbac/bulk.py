from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.config import get_settings
from tenantdesk.core.errors import NotFoundError, ValidationError
from tenantdesk.domain.models import Role, User
from tenantdesk.domain.vocab import EntityType, HistoryAction
from tenantdesk.persistence.db import bounded, unit_of_work
from tenantdesk.persistence.repos import memberships as memberships_repo
from tenantdesk.persistence.repos import roles as roles_repo
from tenantdesk.persistence.repos import users as users_repo
from tenantdesk.services.audit import AuditLog, FieldChange


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPair:
    user_id: str
    user_name: str
    role_id: str
    role_name: str


@dataclass(frozen=True)
class AssignmentReport:
    written: int
    pairs: tuple[ResolvedPair, ...]


class _Identified(Protocol):
    @property
    def id(self) -> str: ...


RowT = TypeVar("RowT", bound=_Identified)


def _index_by_ref(
    rows: Sequence[RowT],
    refs: Sequence[str],
    name_of: Callable[[RowT], str],
) -> tuple[dict[str, RowT], list[str], list[str]]:
    # Map each reference to exactly one row by id first, then by lowercased name.
    by_id = {row.id: row for row in rows}
    by_name: dict[str, list[RowT]] = {}
    for row in rows:
        by_name.setdefault(name_of(row).strip().lower(), []).append(row)
    resolved: dict[str, RowT] = {}
    missing: list[str] = []
    ambiguous: list[str] = []
    for ref in refs:
        if ref in by_id:
            resolved[ref] = by_id[ref]
            continue
        matches = by_name.get(ref.strip().lower(), [])
        if len(matches) == 1:
            resolved[ref] = matches[0]
        elif matches:
            ambiguous.append(ref)
        else:
            missing.append(ref)
    return resolved, missing, ambiguous


def _distinct(refs: Sequence[str]) -> list[str]:
    seen: dict[str, None] = {}
    for ref in refs:
        seen.setdefault(ref, None)
    return list(seen)


class BulkAssignmentCoordinator:
    """Apply many (user, role) bindings to one workspace as a single batch.

    Validation collects every bad reference before failing, so callers can
    fix the whole batch at once. When validation passes, every binding is
    upserted on (user_id, workspace_id) in one transaction together with the
    USERROLE history for bindings whose role actually changed.
    """

    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s
        self.audit = AuditLog(session)

    def _validate_shape(self, subjects: Sequence[str], grants: Sequence[str]) -> None:
        errors: dict[str, list[str]] = {}
        if not subjects:
            errors["subjects"] = ["subjects must be a non-empty list"]
        if not grants:
            errors["grants"] = ["grants must be a non-empty list"]
        if subjects and grants and len(subjects) != len(grants):
            errors["length"] = [f"subjects={len(subjects)}", f"grants={len(grants)}"]
        for label, refs in (("subjects", subjects), ("grants", grants)):
            blanks = [str(index) for index, ref in enumerate(refs) if not str(ref or "").strip()]
            if blanks:
                errors[f"blank_{label}"] = blanks
        if errors:
            raise ValidationError("subjects and grants must be equal-length non-empty lists", details=errors)

    async def _resolve(
        self,
        workspace_id: str,
        subjects: Sequence[str],
        grants: Sequence[str],
    ) -> tuple[dict[str, User], dict[str, Role]]:
        role_refs = _distinct(grants)
        user_refs = _distinct(subjects)
        roles = await bounded(
            roles_repo.find_roles(self.session, workspace_id=workspace_id, refs=role_refs),
            timeout_s=self.timeout_s,
            operation="membership.roles",
        )
        users = await bounded(
            users_repo.find_users(self.session, refs=user_refs),
            timeout_s=self.timeout_s,
            operation="membership.users",
        )
        roles_by_ref, missing_roles, ambiguous_roles = _index_by_ref(roles, role_refs, lambda row: row.name)
        users_by_ref, missing_users, ambiguous_users = _index_by_ref(users, user_refs, lambda row: row.name)

        details: dict[str, list[str]] = {}
        if missing_roles or ambiguous_roles:
            details["invalid_roles"] = missing_roles + ambiguous_roles
        if missing_users:
            details["missing_users"] = missing_users
        if ambiguous_users:
            details["ambiguous_users"] = ambiguous_users
        if details:
            logger.info(
                "bulk_assign_rejected workspace_id=%s invalid_roles=%d invalid_users=%d",
                workspace_id,
                len(details.get("invalid_roles", [])),
                len(missing_users) + len(ambiguous_users),
            )
            raise ValidationError("Some role or user references could not be resolved", details=details)
        return users_by_ref, roles_by_ref

    def _check_active(self, users: Sequence[User]) -> None:
        inactive = sorted({user.name for user in users if not (user.is_active and user.is_verified)})
        if inactive:
            raise ValidationError(
                "Some users are inactive or unverified",
                details={"inactive_users": inactive},
            )

    async def _apply(
        self,
        workspace_id: str,
        bindings: dict[str, str],
        *,
        actor_id: str,
    ) -> int:
        existing = await bounded(
            memberships_repo.list_memberships_for_users(
                self.session, workspace_id=workspace_id, user_ids=bindings.keys()
            ),
            timeout_s=self.timeout_s,
            operation="membership.existing",
        )
        now = datetime.now(timezone.utc)
        written = await memberships_repo.upsert_memberships(
            self.session, workspace_id=workspace_id, bindings=bindings, now=now
        )
        for user_id, role_id in bindings.items():
            previous = existing.get(user_id)
            old_role_id = previous.role_id if previous is not None else None
            if old_role_id == role_id:
                continue
            await self.audit.record(
                workspace_id=workspace_id,
                entity_type=EntityType.USERROLE,
                entity_id=user_id,
                change_set=(FieldChange(field="role_id", old_value=old_role_id, new_value=role_id),),
                actor_id=actor_id,
                action=HistoryAction.UPDATE if previous is not None else HistoryAction.CREATE,
                changed_at=now,
            )
        return written

    async def assign(
        self,
        workspace_id: str,
        subjects: Sequence[str],
        grants: Sequence[str],
        *,
        actor_id: str,
    ) -> AssignmentReport:
        self._validate_shape(subjects, grants)
        subjects = [str(ref).strip() for ref in subjects]
        grants = [str(ref).strip() for ref in grants]
        users_by_ref, roles_by_ref = await self._resolve(workspace_id, subjects, grants)
        if get_settings().bulk_assign_require_active_users:
            self._check_active(list(users_by_ref.values()))

        # Last write wins for a user referenced more than once in the batch.
        bindings: dict[str, str] = {}
        resolved: dict[str, ResolvedPair] = {}
        for user_ref, role_ref in zip(subjects, grants):
            user = users_by_ref[user_ref]
            role = roles_by_ref[role_ref]
            bindings.pop(user.id, None)
            resolved.pop(user.id, None)
            bindings[user.id] = role.id
            resolved[user.id] = ResolvedPair(
                user_id=user.id, user_name=user.name, role_id=role.id, role_name=role.name
            )

        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="membership.bulk_assign"):
            written = await self._apply(workspace_id, bindings, actor_id=actor_id)
        logger.info(
            "bulk_assign_applied workspace_id=%s written=%d actor_id=%s",
            workspace_id,
            written,
            actor_id,
        )
        return AssignmentReport(written=written, pairs=tuple(resolved.values()))

    async def assign_one(
        self,
        workspace_id: str,
        user_ref: str,
        role_ref: str,
        *,
        actor_id: str,
    ) -> AssignmentReport:
        return await self.assign(workspace_id, [user_ref], [role_ref], actor_id=actor_id)

    async def add_users_to_role(
        self,
        workspace_id: str,
        role_ref: str,
        user_refs: Sequence[str],
        *,
        actor_id: str,
    ) -> AssignmentReport:
        if not user_refs:
            raise ValidationError("user_ids must be a non-empty list", details={"user_ids": []})
        return await self.assign(workspace_id, list(user_refs), [role_ref] * len(user_refs), actor_id=actor_id)

    async def stage_binding(self, workspace_id: str, user_id: str, role_id: str, *, actor_id: str) -> None:
        # Non-committing single binding for callers composing a larger transaction.
        await self._apply(workspace_id, {user_id: role_id}, actor_id=actor_id)

    async def remove_member(self, workspace_id: str, user_id: str, *, actor_id: str) -> None:
        async with unit_of_work(self.session, timeout_s=self.timeout_s, operation="membership.remove"):
            membership = await bounded(
                memberships_repo.get_membership(self.session, workspace_id=workspace_id, user_id=user_id),
                timeout_s=self.timeout_s,
                operation="membership.get",
            )
            if membership is None:
                raise NotFoundError("User is not a member of this workspace", details={"user_id": [user_id]})
            await memberships_repo.delete_membership(self.session, workspace_id=workspace_id, user_id=user_id)
            await self.audit.record(
                workspace_id=workspace_id,
                entity_type=EntityType.USERROLE,
                entity_id=user_id,
                change_set=(FieldChange(field="role_id", old_value=membership.role_id, new_value=None),),
                actor_id=actor_id,
                action=HistoryAction.DELETE,
            )
        logger.info("member_removed workspace_id=%s user_id=%s actor_id=%s", workspace_id, user_id, actor_id)
