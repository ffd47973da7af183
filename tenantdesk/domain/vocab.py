from __future__ import annotations

from enum import Enum
from typing import TypeVar

from tenantdesk.core.errors import ValidationError


class EntityType(str, Enum):
    WORKSPACE = "WORKSPACE"
    TICKET = "TICKET"
    COMMENT = "COMMENT"
    ROLE = "ROLE"
    USERROLE = "USERROLE"
    HISTORY = "HISTORY"


class Operation(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    COMMENT = "COMMENT"
    # Subsumes every other operation on the same entity type.
    MANAGE = "MANAGE"


class HistoryAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CLOSE = "CLOSE"


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# Legacy role name treated as administrative when the explicit flag is missing.
LEGACY_ADMIN_ROLE_NAME = "ADMIN"

_E = TypeVar("_E", bound=Enum)


def _parse(enum_cls: type[_E], raw: str | _E, label: str) -> _E:
    # Accept enum members or case-insensitive strings; reject anything else.
    if isinstance(raw, enum_cls):
        return raw
    normalized = str(raw).strip().upper()
    try:
        return enum_cls(normalized)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported {label}: {raw}",
            details={label: [str(raw)]},
        ) from exc


def parse_entity_type(raw: str | EntityType) -> EntityType:
    return _parse(EntityType, raw, "entity_type")


def parse_operation(raw: str | Operation) -> Operation:
    return _parse(Operation, raw, "operation")


def permission_key(entity_type: str | EntityType, operation: str | Operation) -> tuple[str, str]:
    # Canonical (entity, operation) pair used in capability sets and grant lists.
    return parse_entity_type(entity_type).value, parse_operation(operation).value


def parse_ticket_status(raw: str | TicketStatus) -> TicketStatus:
    return _parse(TicketStatus, raw, "status")


def parse_ticket_priority(raw: str | TicketPriority) -> TicketPriority:
    return _parse(TicketPriority, raw, "priority")
