from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.persistence.db import SessionLocal
from tenantgate.persistence.repos.directory import get_user
from tenantgate.services.access.grants import compute_allowed_apps
from tenantgate.services.auth.tokens import issue_token


def _build_parser() -> argparse.ArgumentParser:
    # Local and staging use only; production tokens come from the login service.
    parser = argparse.ArgumentParser(description="Issue an access token for a user")
    parser.add_argument("user_id", help="User id to issue the token for")
    parser.add_argument("--ttl", type=int, default=None, help="Token lifetime in seconds")
    return parser


async def _issue(user_id: str, ttl: int | None) -> int:
    async with SessionLocal() as session:
        user = await get_user(session, user_id)
        if user is None:
            raise ValueError("User not found")
        if not user.is_active:
            raise ValueError("User is inactive")
        allowed_apps: list[str] = []
        if user.tenant_id:
            allowed_apps = await compute_allowed_apps(session, user_id=user.id, tenant_id=user.tenant_id)
    token = issue_token(user, allowed_apps=allowed_apps, ttl_seconds=ttl)
    print(f"allowed_apps={','.join(allowed_apps) or '-'}", file=sys.stderr)
    print(token)
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_issue(args.user_id, args.ttl))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"issue_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
