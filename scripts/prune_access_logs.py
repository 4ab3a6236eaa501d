from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import SessionLocal
from tenantgate.persistence.repos.access_logs import prune_access_logs


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete access decision logs past the retention window")
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Override ACCESS_LOG_RETENTION_DAYS for this run",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Roll back instead of committing the deletion",
    )
    return parser


async def _prune(days: int | None, dry_run: bool) -> int:
    async with SessionLocal() as session:
        deleted = await prune_access_logs(session, retention_days=days)
        if dry_run:
            await session.rollback()
            print(f"would_prune_access_logs={deleted}")
            return 0
        await session.commit()
    print(f"pruned_access_logs={deleted}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    if args.days is not None and args.days < 0:
        print("--days must be zero or positive", file=sys.stderr)
        return 2
    try:
        return asyncio.run(_prune(args.days, args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface sweep failures to the scheduler
        print(f"prune_access_logs failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
