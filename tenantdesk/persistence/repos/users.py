from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.domain.models import ApiKey, User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def find_users(session: AsyncSession, *, refs: Iterable[str]) -> list[User]:
    # Users are global; references match ids or lowercased display names.
    keys = list(refs)
    if not keys:
        return []
    lowered = [key.strip().lower() for key in keys]
    result = await session.execute(
        select(User).where(or_(User.id.in_(keys), func.lower(User.name).in_(lowered)))
    )
    return list(result.scalars().all())


async def get_user_by_key_hash(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    result = await session.execute(
        select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]
