#!/usr/bin/env python3
"""
Daily Allowance Refresh

Grants the daily free-token allowance to every token-user account whose
last grant is at least one refresh interval old. Meant for cron; the
per-request opportunistic check covers users who are active in between.

Examples:
  # Refresh every due account once
  python3 scripts/refresh_daily_allowances.py

  # Smaller batches, re-run every 15 minutes
  python3 scripts/refresh_daily_allowances.py --batch-size 200 --loop 900
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from token_ledger.config import settings  # noqa: E402
from token_ledger.db.session import (  # noqa: E402
    close_engines,
    get_read_session_factory,
    get_write_session_factory,
)
from token_ledger.observability import get_logger, setup_logging  # noqa: E402
from token_ledger.services.balance_store import SqlBalanceStore  # noqa: E402
from token_ledger.services.daily_refresh import DailyRefreshScheduler  # noqa: E402

logger = get_logger(__name__)

MAX_BATCHES_PER_RUN = 1000


async def refresh_due_accounts(scheduler: DailyRefreshScheduler, batch_size: int) -> int:
    """Refresh in batches until a batch comes back short. Returns accounts refreshed."""
    total = 0
    for _ in range(MAX_BATCHES_PER_RUN):
        count = await scheduler.refresh_all_due(batch_size)
        total += count
        if count < batch_size:
            break
    return total


async def run(batch_size: int, loop_seconds: float | None) -> None:
    store = SqlBalanceStore(
        session_factory=get_write_session_factory(),
        read_session_factory=get_read_session_factory(),
        initial_free_tokens=settings.initial_free_tokens,
        daily_allowance=settings.daily_allowance_tokens,
        refresh_interval=settings.daily_refresh_interval,
    )
    scheduler = DailyRefreshScheduler(store, interval=settings.daily_refresh_interval)

    try:
        while True:
            total = await refresh_due_accounts(scheduler, batch_size)
            logger.info("daily_refresh_run_completed", accounts_refreshed=total)
            if loop_seconds is None:
                break
            await asyncio.sleep(loop_seconds)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Grant the daily free-token allowance to all due accounts",
    )
    parser.add_argument(
        "--batch-size", type=int, default=500, help="Accounts locked per transaction"
    )
    parser.add_argument(
        "--loop",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Keep running, sleeping SECONDS between runs",
    )
    args = parser.parse_args()

    if args.batch_size <= 0:
        parser.error("--batch-size must be positive")

    setup_logging()
    try:
        asyncio.run(run(args.batch_size, args.loop))
    except KeyboardInterrupt:
        logger.info("daily_refresh_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
