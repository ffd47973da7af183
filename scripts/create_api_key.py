from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from tenantdesk.core.logging import configure_logging
from tenantdesk.domain.models import User
from tenantdesk.persistence.db import Database
from tenantdesk.persistence.repos import users as users_repo
from tenantdesk.services.auth.api_keys import issue_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a user")
    parser.add_argument("--name", required=True, help="User display name")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--key-name", default=None, help="Key label for operators")
    parser.add_argument("--super", dest="is_super", action="store_true", help="Grant super-user bypass")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    database = Database()
    try:
        async with database.session() as session:
            user_id = args.user_id or uuid4().hex
            user = await users_repo.get_user(session, user_id)
            if user is None:
                user = User(
                    id=user_id,
                    name=args.name,
                    email=args.email,
                    is_active=True,
                    is_verified=True,
                    is_super=args.is_super,
                )
                session.add(user)
            else:
                if args.is_super and not user.is_super:
                    user.is_super = True
                if args.email and user.email != args.email:
                    user.email = args.email
            # Flush the user row before inserting API keys to satisfy FK constraints.
            await session.flush()
            issued = await issue_api_key(session, user_id=user.id, name=args.key_name)
            await session.commit()
    finally:
        await database.dispose()

    print("API key created:")
    print(f"  user_id: {user_id}")
    print(f"  key_id: {issued.key_id}")
    print(f"  key_prefix: {issued.key_prefix}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
