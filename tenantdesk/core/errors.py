from __future__ import annotations

from typing import Any


class TenantDeskError(Exception):
    """Base error for TenantDesk."""

    code = "ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(TenantDeskError):
    """A workspace, role, user, ticket or comment reference does not resolve."""

    code = "NOT_FOUND"


class ForbiddenError(TenantDeskError):
    """The authorization gate denied the operation."""

    code = "AUTH_FORBIDDEN"

    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason, details=details)
        self.reason = reason


class ConflictError(TenantDeskError):
    """Duplicate role name, role still in use, or last administrator role."""

    code = "CONFLICT"


class ValidationError(TenantDeskError):
    """Malformed input; details carry every offending reference."""

    code = "VALIDATION_ERROR"


class InternalError(TenantDeskError):
    """Storage timeout or unexpected transaction failure."""

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, details=details)
        self.retryable = retryable
