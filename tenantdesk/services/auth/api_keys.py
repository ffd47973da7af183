from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.errors import NotFoundError
from tenantdesk.domain.models import ApiKey
from tenantdesk.persistence.repos import users as users_repo


_KEY_PREFIX = "tdk"


@dataclass(frozen=True)
class IssuedKey:
    key_id: str
    raw_key: str
    key_prefix: str


def hash_api_key(raw_key: str) -> str:
    # Keys are stored and looked up by SHA-256 digest only.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # The key id is embedded so operators can trace a secret to its row.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{_KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)


async def issue_api_key(session: AsyncSession, *, user_id: str, name: str | None = None) -> IssuedKey:
    """Stage an API key row for an existing user; the caller commits."""
    user = await users_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": [user_id]})
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            user_id=user.id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
        )
    )
    await session.flush()
    return IssuedKey(key_id=key_id, raw_key=raw_key, key_prefix=key_prefix)
