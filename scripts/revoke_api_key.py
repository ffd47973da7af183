from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from sqlalchemy import select, update

from tenantdesk.core.logging import configure_logging
from tenantdesk.domain.models import ApiKey
from tenantdesk.persistence.db import Database


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str) -> int:
    # Keys are marked revoked rather than deleted.
    database = Database()
    try:
        async with database.session() as session:
            result = await session.execute(select(ApiKey).where(ApiKey.id == key_id))
            if result.scalar_one_or_none() is None:
                raise ValueError("API key not found")
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .values(revoked_at=datetime.now(timezone.utc))
            )
            await session.commit()
    finally:
        await database.dispose()
    print(f"Revoked API key {key_id}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
