from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone

from tenantbroker.core.config import resolve_broker_config
from tenantbroker.core.logging import configure_logging
from tenantbroker.persistence.db import session_scope
from tenantbroker.persistence.repos.org_settings import list_expired_grace_periods
from tenantbroker.services.storage.lifecycle import cleanup_expired_grace_periods


async def _list_expired(now: datetime) -> int:
    async with session_scope() as session:
        rows = await list_expired_grace_periods(session, now)
    print("dry_run=true")
    for row in rows:
        mode = (row.storage_profile or {}).get("mode")
        print(f"expired org_id={row.org_id} mode={mode} ends_at={row.storage_grace_ends_at.isoformat()}")
    return 0


async def _run_cleanup(dry_run: bool) -> int:
    # Purge managed files for organizations whose read-only grace window has ended.
    now = datetime.now(timezone.utc)
    if dry_run:
        return await _list_expired(now)
    config = resolve_broker_config()
    async with session_scope() as session:
        report = await cleanup_expired_grace_periods(session, config=config, now=now)
    print(json.dumps(report.as_dict(), indent=2, sort_keys=True))
    return 1 if report.errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Clean up storage for organizations past their grace period")
    parser.add_argument("--dry-run", action="store_true", help="List expired organizations without deleting")
    args = parser.parse_args()

    configure_logging()
    raise SystemExit(asyncio.run(_run_cleanup(args.dry_run)))


if __name__ == "__main__":
    main()
