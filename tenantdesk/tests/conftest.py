from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.apps.api.deps import reset_auth_cache
from tenantdesk.core.config import get_settings
from tenantdesk.persistence.db import Database


@pytest.fixture(autouse=True)
def reset_cached_state() -> None:
    # Settings and principals are process-wide caches; keep them per-test.
    get_settings.cache_clear()
    reset_auth_cache()
    yield
    get_settings.cache_clear()
    reset_auth_cache()


@pytest.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    # One SQLite file per test keeps state isolated without cleanup passes.
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'tenantdesk.db'}")
    await db.create_schema()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database: Database) -> AsyncIterator[AsyncSession]:
    async with database.session() as db_session:
        yield db_session
