from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WorkspacePredicateError(RuntimeError):
    # Surface repository calls that would run without a workspace boundary.
    message: str


def require_workspace_id(workspace_id: str | None) -> None:
    if not workspace_id:
        raise WorkspacePredicateError("Workspace predicate required but workspace_id is missing")


def workspace_predicate(model, workspace_id: str) -> object:
    # Build workspace predicates through a single helper to guarantee guard coverage.
    require_workspace_id(workspace_id)
    return model.workspace_id == workspace_id
