from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Union

from tenantdesk.core.errors import InternalError, TenantDeskError
from tenantdesk.domain.models import Workspace
from tenantdesk.domain.vocab import permission_key
from tenantdesk.services.rbac.gate import AuthorizationGate, CapabilitySet, Identity, log_decision
from tenantdesk.services.rbac.membership import (
    MembershipResolver,
    WorkspaceReference,
    reference_from_params,
)


@dataclass(frozen=True)
class RequestContext:
    """Immutable per-request authorization state threaded through the steps."""

    identity: Identity
    entity_type: str
    operation: str
    params: Mapping[str, Any] = field(default_factory=dict)
    reference: WorkspaceReference | None = None
    workspace_id: str | None = None
    workspace: Workspace | None = None
    capabilities: CapabilitySet | None = None


@dataclass(frozen=True)
class Continue:
    context: RequestContext


@dataclass(frozen=True)
class Deny:
    reason: str


@dataclass(frozen=True)
class Fail:
    error: TenantDeskError


StepResult = Union[Continue, Deny, Fail]
Step = Callable[[RequestContext], Awaitable[StepResult]]


def new_context(
    identity: Identity,
    entity_type: str,
    operation: str,
    params: Mapping[str, Any] | None = None,
) -> RequestContext:
    entity, op = permission_key(entity_type, operation)
    return RequestContext(identity=identity, entity_type=entity, operation=op, params=dict(params or {}))


async def parse_reference(context: RequestContext) -> StepResult:
    try:
        reference = reference_from_params(context.params)
    except TenantDeskError as exc:
        return Fail(exc)
    return Continue(replace(context, reference=reference))


def resolve_workspace_step(resolver: MembershipResolver) -> Step:
    async def _step(context: RequestContext) -> StepResult:
        if context.reference is None:
            return Fail(InternalError("Workspace reference was not parsed", retryable=False))
        try:
            workspace_id = await resolver.resolve_workspace(context.reference)
            workspace = await resolver.get_workspace(workspace_id)
        except TenantDeskError as exc:
            return Fail(exc)
        return Continue(replace(context, workspace_id=workspace_id, workspace=workspace))

    return _step


def resolve_capabilities_step(gate: AuthorizationGate) -> Step:
    async def _step(context: RequestContext) -> StepResult:
        if context.workspace is None:
            return Fail(InternalError("Workspace was not loaded", retryable=False))
        try:
            capabilities = await gate.resolve(context.identity, context.workspace)
        except TenantDeskError as exc:
            return Fail(exc)
        return Continue(replace(context, capabilities=capabilities))

    return _step


async def check_permission(context: RequestContext) -> StepResult:
    if context.capabilities is None:
        return Fail(InternalError("Capabilities were not resolved", retryable=False))
    decision = log_decision(context.capabilities, context.entity_type, context.operation)
    if not decision.allowed:
        return Deny(decision.reason or "")
    return Continue(context)


def default_steps(gate: AuthorizationGate) -> list[Step]:
    # Reference -> workspace -> capabilities -> permission, in that order.
    return [
        parse_reference,
        resolve_workspace_step(gate.resolver),
        resolve_capabilities_step(gate),
        check_permission,
    ]


async def run_pipeline(context: RequestContext, steps: Sequence[Step]) -> StepResult:
    result: StepResult = Continue(context)
    for step in steps:
        result = await step(context)
        if not isinstance(result, Continue):
            return result
        context = result.context
    return result
