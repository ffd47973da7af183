from __future__ import annotations

import asyncio
import sys

from tenantdesk.core.logging import configure_logging
from tenantdesk.persistence.db import Database


async def _init() -> int:
    # Local bootstrap only; deployed databases are managed with `alembic upgrade head`.
    database = Database()
    try:
        await database.create_schema()
    finally:
        await database.dispose()
    print(f"schema ready: {database.url.split('@')[-1]}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_init())
    except Exception as exc:  # noqa: BLE001 - report bootstrap failures to the operator
        print(f"init_db failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
