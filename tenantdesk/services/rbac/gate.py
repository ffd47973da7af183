from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import ForbiddenError
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import EntityType, Operation, permission_key
from tenantdesk.persistence.db import bounded
from tenantdesk.persistence.repos import roles as roles_repo
from tenantdesk.services.rbac.membership import MembershipResolver
from tenantdesk.services.rbac.roles import is_administrative_role


logger = logging.getLogger(__name__)

DENY_NOT_MEMBER = "not a member"
DENY_INSUFFICIENT = "insufficient permission"
DENY_WORKSPACE_CREATE = "workspace creation requires the super identity"


@dataclass(frozen=True)
class Identity:
    subject_id: str
    # Global bypass flag carried on the authenticated identity, never a membership.
    is_super: bool = False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise ForbiddenError(self.reason or DENY_INSUFFICIENT)


ALLOW = Decision(allowed=True)


def _is_workspace_creation(entity: str, op: str) -> bool:
    return entity == EntityType.WORKSPACE.value and op == Operation.CREATE.value


@dataclass(frozen=True)
class CapabilitySet:
    """What one identity may do inside one workspace, resolved once per request.

    Pure value: deciding against it performs no I/O, so handlers can check
    additional operations without another round trip.
    """

    subject_id: str
    workspace_id: str | None
    is_super: bool = False
    is_workspace_admin: bool = False
    role_id: str | None = None
    role_name: str | None = None
    role_is_administrative: bool = False
    grants: frozenset[tuple[str, str]] = field(default_factory=frozenset)

    @property
    def is_member(self) -> bool:
        return self.role_id is not None

    def decide(self, entity_type: str | EntityType, operation: str | Operation) -> Decision:
        entity, op = permission_key(entity_type, operation)
        # Workspace creation requires the super identity; workspace admins included.
        if _is_workspace_creation(entity, op):
            return ALLOW if self.is_super else Decision(False, DENY_WORKSPACE_CREATE)
        if self.is_super:
            return ALLOW
        if self.is_workspace_admin:
            return ALLOW
        if not self.is_member:
            return Decision(False, DENY_NOT_MEMBER)
        if (entity, op) in self.grants or (entity, Operation.MANAGE.value) in self.grants:
            return ALLOW
        return Decision(False, DENY_INSUFFICIENT)

    def allows(self, entity_type: str | EntityType, operation: str | Operation) -> bool:
        return self.decide(entity_type, operation).allowed


def log_decision(capabilities: CapabilitySet, entity: str, op: str) -> Decision:
    decision = capabilities.decide(entity, op)
    if not decision.allowed:
        logger.info(
            "authz_denied subject_id=%s workspace_id=%s entity=%s operation=%s reason=%s",
            capabilities.subject_id,
            capabilities.workspace_id,
            entity,
            op,
            decision.reason,
        )
    return decision


class AuthorizationGate:
    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s
        self.resolver = MembershipResolver(session, timeout_s=timeout_s)

    async def resolve(self, identity: Identity, workspace: Workspace) -> CapabilitySet:
        # Super and admin short-circuit without touching membership tables.
        if identity.is_super or identity.subject_id == workspace.admin_id:
            return CapabilitySet(
                subject_id=identity.subject_id,
                workspace_id=workspace.id,
                is_super=identity.is_super,
                is_workspace_admin=identity.subject_id == workspace.admin_id,
            )
        role = await self.resolver.membership_of(identity.subject_id, workspace.id)
        if role is None:
            return CapabilitySet(subject_id=identity.subject_id, workspace_id=workspace.id)
        grants = await bounded(
            roles_repo.list_grants(self.session, role_ids=[role.id]),
            timeout_s=self.timeout_s,
            operation="resolve.grants",
        )
        return CapabilitySet(
            subject_id=identity.subject_id,
            workspace_id=workspace.id,
            role_id=role.id,
            role_name=role.name,
            role_is_administrative=is_administrative_role(role),
            grants=frozenset(grants.get(role.id, [])),
        )

    async def authorize(
        self,
        identity: Identity,
        workspace: Workspace,
        entity_type: str | EntityType,
        operation: str | Operation,
    ) -> Decision:
        capabilities = await self.resolve(identity, workspace)
        return log_decision(capabilities, *permission_key(entity_type, operation))

    def authorize_workspace_creation(self, identity: Identity) -> Decision:
        capabilities = CapabilitySet(
            subject_id=identity.subject_id,
            workspace_id=None,
            is_super=identity.is_super,
        )
        return log_decision(capabilities, EntityType.WORKSPACE.value, Operation.CREATE.value)
