from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.vocab import EntityType, Operation, permission_key
from tenantdesk.persistence.db import bounded
from tenantdesk.persistence.repos import permissions as permissions_repo


class PermissionCatalog:
    """Canonical (entity_type, operation) vocabulary referenced by every grant.

    Rows are created lazily on first reference and never deleted.
    """

    def __init__(self, session: AsyncSession, *, timeout_s: float | None = None) -> None:
        self.session = session
        self.timeout_s = timeout_s

    async def ensure(self, entity_type: str | EntityType, operation: str | Operation) -> int:
        entity, op = permission_key(entity_type, operation)
        return await bounded(
            permissions_repo.ensure_permission(self.session, entity_type=entity, operation=op),
            timeout_s=self.timeout_s,
            operation="permission.ensure",
        )

    async def ensure_many(self, pairs: Iterable[tuple[str, str]]) -> list[int]:
        # Dedupe first so each pair costs one upsert regardless of repetition.
        keys = sorted({permission_key(entity, op) for entity, op in pairs})
        return [await self.ensure(entity, op) for entity, op in keys]

    async def list_all(self) -> list[tuple[str, str]]:
        rows = await bounded(
            permissions_repo.list_permissions(self.session),
            timeout_s=self.timeout_s,
            operation="permission.list",
        )
        return [(row.entity_type, row.operation) for row in rows]
