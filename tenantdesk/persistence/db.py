from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tenantdesk.core.config import Settings, get_settings
from tenantdesk.core.errors import InternalError, TenantDeskError
from tenantdesk.domain.models import Base


logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    # SQLite ignores foreign keys unless enabled per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine and session factory for one process.

    Constructed at startup, handed to components explicitly, and disposed at
    shutdown. Nothing in the package reaches for a module-level engine.
    """

    def __init__(self, url: str | None = None, *, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.url = url or self.settings.database_url
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        # Configure bounded asyncpg pools and a statement timeout outside of SQLite.
        if not self.url.startswith("sqlite"):
            engine_kwargs["pool_size"] = max(1, int(self.settings.db_pool_size))
            engine_kwargs["max_overflow"] = max(0, int(self.settings.db_max_overflow))
            engine_kwargs["pool_timeout"] = 30
            engine_kwargs["pool_recycle"] = 1800
            if self.settings.storage_timeout_ms > 0:
                engine_kwargs["connect_args"] = {
                    "server_settings": {"statement_timeout": str(int(self.settings.storage_timeout_ms))}
                }
        self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        if self.url.startswith("sqlite"):
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def timeout_s(self) -> float | None:
        if self.settings.storage_timeout_ms <= 0:
            return None
        return self.settings.storage_timeout_ms / 1000.0

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_schema(self) -> None:
        # Used by local bootstrap and tests; deployments run Alembic migrations.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


@asynccontextmanager
async def unit_of_work(
    session: AsyncSession,
    *,
    timeout_s: float | None = None,
    operation: str = "write",
) -> AsyncIterator[AsyncSession]:
    """Commit everything staged inside the block atomically, or nothing.

    Domain errors roll back and propagate unchanged. Storage errors and
    timeouts roll back and surface as a retryable ``InternalError``.
    """
    try:
        yield session
        await asyncio.wait_for(session.commit(), timeout=timeout_s)
    except TenantDeskError:
        await session.rollback()
        raise
    except (SQLAlchemyError, TimeoutError, asyncio.TimeoutError) as exc:
        await session.rollback()
        logger.error("storage_write_failed operation=%s", operation, exc_info=exc)
        raise InternalError(f"Storage failure during {operation}", retryable=True) from exc
    except BaseException:
        await session.rollback()
        raise


async def bounded(coro, *, timeout_s: float | None, operation: str = "read"):
    # Apply the caller-supplied storage bound to a single read; timeouts are retryable.
    try:
        return await asyncio.wait_for(coro, timeout=timeout_s)
    except (TimeoutError, asyncio.TimeoutError) as exc:
        logger.error("storage_read_timeout operation=%s", operation)
        raise InternalError(f"Storage timeout during {operation}", retryable=True) from exc
    except SQLAlchemyError as exc:
        logger.error("storage_read_failed operation=%s", operation, exc_info=exc)
        raise InternalError(f"Storage failure during {operation}", retryable=True) from exc


def dialect_insert(session: AsyncSession, model):
    # Pick the dialect INSERT construct so ON CONFLICT upserts work on Postgres and SQLite.
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
