from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.core.config import get_settings
from tenantdesk.core.errors import ForbiddenError
from tenantdesk.domain.models import ApiKey, Workspace
from tenantdesk.domain.vocab import EntityType, Operation
from tenantdesk.persistence.db import Database
from tenantdesk.persistence.repos import users as users_repo
from tenantdesk.services.auth.api_keys import hash_api_key
from tenantdesk.services.rbac.gate import AuthorizationGate, CapabilitySet, Identity
from tenantdesk.services.rbac.pipeline import Continue, Deny, default_steps, new_context, run_pipeline


logger = logging.getLogger(__name__)


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with database.session() as session:
        yield session


def get_timeout(database: Database = Depends(get_database)) -> float | None:
    return database.timeout_s


class Principal(BaseModel):
    subject_id: str
    is_super: bool = False
    api_key_id: str
    auth_method: str = "api_key"

    @property
    def identity(self) -> Identity:
        return Identity(subject_id=self.subject_id, is_super=self.is_super)


@dataclass(frozen=True)
class AccessContext:
    principal: Principal
    workspace: Workspace
    capabilities: CapabilitySet


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def reset_auth_cache() -> None:
    _auth_cache.clear()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    # Principals only; capabilities are never cached across requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _touch_last_used(db: AsyncSession, api_key_id: str) -> None:
    # Best effort; a failed timestamp update never blocks the request.
    try:
        await db.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now()))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("api_key_touch_failed api_key_id=%s error=%s", api_key_id, type(exc).__name__)


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    try:
        raw_key = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException:
        logger.info("auth_failed path=%s reason=missing_token", request.url.path)
        raise

    key_hash = hash_api_key(raw_key)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        return cached

    try:
        row = await users_repo.get_user_by_key_hash(db, key_hash)
    except SQLAlchemyError as exc:
        logger.error("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if row is None:
        logger.info("auth_failed path=%s reason=unknown_key", request.url.path)
        raise _auth_error("Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        logger.info("auth_failed path=%s reason=revoked_or_inactive user_id=%s", request.url.path, user.id)
        raise _auth_error("API key is revoked or inactive")

    principal = Principal(subject_id=user.id, is_super=bool(user.is_super), api_key_id=api_key.id)
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    await _touch_last_used(db, api_key.id)
    return principal


async def require_super(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_super:
        logger.info("authz_denied subject_id=%s reason=super_required", principal.subject_id)
        raise ForbiddenError("Only the super identity can perform this action")
    return principal


def _request_params(request: Request) -> dict[str, str]:
    # Path parameters win over query parameters of the same name.
    params = dict(request.query_params)
    params.update({key: str(value) for key, value in request.path_params.items()})
    return params


def require_permission(entity_type: EntityType, operation: Operation):
    """Dependency factory running the authorization pipeline for a route.

    The workspace is resolved from the route's ``workspace_id``, ``ticket_id``
    or ``comment_id`` parameter, in that order.
    """

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
        timeout_s: float | None = Depends(get_timeout),
    ) -> AccessContext:
        gate = AuthorizationGate(db, timeout_s=timeout_s)
        context = new_context(principal.identity, entity_type, operation, _request_params(request))
        result = await run_pipeline(context, default_steps(gate))
        if isinstance(result, Deny):
            raise ForbiddenError(result.reason, details={"entity": entity_type.value, "operation": operation.value})
        if not isinstance(result, Continue):
            raise result.error
        resolved = result.context
        return AccessContext(
            principal=principal,
            workspace=resolved.workspace,  # type: ignore[arg-type]
            capabilities=resolved.capabilities,  # type: ignore[arg-type]
        )

    return _dependency
