from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.access.licenses import expire_licenses
from tenantgate.services.audit import record_event


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mark licenses past their expiry as expired")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Roll back instead of committing the sweep",
    )
    return parser


async def _sweep(dry_run: bool) -> int:
    async with SessionLocal() as session:
        if dry_run:
            # Run the same UPDATE path, then discard it.
            expired = await expire_licenses(session, commit=False)
            await session.rollback()
            print(f"would_expire_licenses={len(expired)}")
            return 0
        expired = await expire_licenses(session)
        for tenant_id, application_id in expired:
            await record_event(
                session=session,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id="expire_licenses",
                actor_role=None,
                event_type="license.expired",
                outcome="success",
                resource_type="license",
                resource_id=application_id,
                metadata={"application_id": application_id},
            )
    print(f"expired_licenses={len(expired)}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sweep(args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface sweep failures to the scheduler
        print(f"expire_licenses failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
