from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import HistoryEntry
from tenantdesk.domain.vocab import EntityType, HistoryAction
from tenantdesk.persistence.repos import history as history_repo


logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: str | None
    new_value: str | None


ChangeSet = tuple[FieldChange, ...]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_value(value: Any) -> str | None:
    """Render a field value in the one canonical text form stored in history.

    Datetimes are converted to UTC ISO-8601 (naive values are taken as UTC),
    dates to ISO dates, enums to their value and booleans to ``true``/``false``.
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _read(source: Any, field: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(field, _MISSING)
    return getattr(source, field, _MISSING)


def diff(before: Any, after: Any, tracked_fields: Iterable[str]) -> ChangeSet:
    # Compare normalized forms; fields the caller did not supply are left alone.
    changes: list[FieldChange] = []
    for field in tracked_fields:
        new_raw = _read(after, field)
        if new_raw is _MISSING:
            continue
        old_raw = _read(before, field)
        old_value = normalize_value(None if old_raw is _MISSING else old_raw)
        new_value = normalize_value(new_raw)
        # None and empty text are the same state for audit purposes.
        if (old_value or "") == (new_value or ""):
            continue
        changes.append(FieldChange(field=field, old_value=old_value, new_value=new_value))
    return tuple(changes)


def lifecycle_change(
    action: HistoryAction,
    *,
    old_value: str | None = None,
    new_value: str | None = None,
) -> FieldChange:
    """Build the synthetic entry for actions without a natural field diff."""
    if action == HistoryAction.CLOSE:
        return FieldChange(field=action.value, old_value=old_value, new_value=new_value or "CLOSED")
    if action in {HistoryAction.CREATE, HistoryAction.DELETE}:
        return FieldChange(
            field=action.value,
            old_value=old_value if old_value is not None else "false",
            new_value=new_value if new_value is not None else "true",
        )
    raise ValueError(f"No lifecycle marker for action {action.value}")


class AuditLog:
    """Append-only field-level history bound to the caller's transaction.

    Rows are staged on the session that carries the mutation and flushed so a
    storage failure aborts the enclosing unit of work. Nothing here commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        *,
        workspace_id: str,
        entity_type: EntityType,
        entity_id: str,
        change_set: ChangeSet,
        actor_id: str,
        action: HistoryAction,
        changed_at: datetime | None = None,
    ) -> list[HistoryEntry]:
        if not change_set:
            return []
        stamp = changed_at or _utc_now()
        entries = [
            HistoryEntry(
                workspace_id=workspace_id,
                entity_type=entity_type.value,
                entity_id=entity_id,
                action=action.value,
                field_changed=change.field,
                old_value=change.old_value,
                new_value=change.new_value,
                changed_by=actor_id,
                changed_at=stamp,
            )
            for change in change_set
        ]
        self.session.add_all(entries)
        await self.session.flush()
        return entries

    async def record_lifecycle(
        self,
        *,
        workspace_id: str,
        entity_type: EntityType,
        entity_id: str,
        actor_id: str,
        action: HistoryAction,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> list[HistoryEntry]:
        change = lifecycle_change(action, old_value=old_value, new_value=new_value)
        return await self.record(
            workspace_id=workspace_id,
            entity_type=entity_type,
            entity_id=entity_id,
            change_set=(change,),
            actor_id=actor_id,
            action=action,
        )

    async def history(
        self,
        *,
        workspace_id: str,
        entity_type: EntityType,
        entity_id: str,
    ) -> list[HistoryEntry]:
        return await history_repo.list_entity_history(
            self.session,
            workspace_id=workspace_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
        )

    async def purge(
        self,
        *,
        workspace_id: str,
        entity_type: EntityType,
        entity_ids: list[str],
        actor_id: str,
    ) -> int:
        # Only called from inside a hard-delete transaction; always leaves a log line.
        removed = await history_repo.delete_entity_history(
            self.session,
            workspace_id=workspace_id,
            entity_type=entity_type.value,
            entity_ids=entity_ids,
        )
        logger.warning(
            "history_purged workspace_id=%s entity_type=%s entities=%d rows=%d actor_id=%s",
            workspace_id,
            entity_type.value,
            len(entity_ids),
            removed,
            actor_id,
        )
        return removed
