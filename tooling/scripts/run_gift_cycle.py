#!/usr/bin/env python3
"""Run one gift cycle (sync, evaluate, email) for every enabled shop.

Intended usage: schedule via cron when the in-process scheduler is disabled,
or run by hand after changing a shop's gift settings.

Example:
    python tooling/scripts/run_gift_cycle.py

Use `--dry-run` to sync and evaluate without sending real emails (messages
are captured by the in-memory backend).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the subscription gift cycle")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the in-memory email backend instead of SMTP delivery.",
    )
    parser.add_argument(
        "--trigger",
        default="script",
        help="Label recorded on sync logs for this run.",
    )
    return parser.parse_args()


async def _run(dry_run: bool, trigger: str) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from giftsync_api.core.settings import settings  # type: ignore import-position
    from giftsync_api.db.session import async_session  # type: ignore import-position
    from giftsync_api.jobs.gift_cycle import GiftCycleRunner  # type: ignore import-position
    from giftsync_api.services.notifications import GiftNotificationService  # type: ignore import-position

    def _notifier() -> GiftNotificationService:
        service = GiftNotificationService()
        if dry_run:
            service.use_in_memory_backend()
        return service

    runner = GiftCycleRunner(
        async_session,
        notifier_factory=_notifier,
        email_send_delay_seconds=settings.email_send_delay_seconds,
    )
    summary = await runner.run_cycle(triggered_by=trigger)
    for result in summary.results:
        for error in result.errors:
            logger.warning("Gift cycle shop error", shop=result.shop, error=error)
    return summary.totals()


def main() -> int:
    args = parse_args()
    totals = asyncio.run(_run(args.dry_run, args.trigger))
    logger.success("Gift cycle run completed", dry_run=args.dry_run, **totals)
    return 1 if totals.get("shops_with_errors") else 0


if __name__ == "__main__":
    sys.exit(main())
