"""
Daily Refresh Scheduler - opportunistic free-allowance grants.

Checked before deductions and on explicit request. Best effort: a failed
refresh is logged and the caller proceeds with the current balance.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from token_ledger.observability.metrics import metrics
from token_ledger.services.balance_store import BalanceStore, is_refresh_due

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DailyRefreshScheduler:
    """Grant the daily allowance once a rolling interval has elapsed."""

    def __init__(
        self,
        store: BalanceStore,
        interval: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._interval = interval
        self._clock = clock

    async def check_and_refresh(self, user_id: str) -> bool:
        """
        Refresh the user's free allowance if due.

        The store re-checks the window under its row lock, so concurrent
        callers grant at most once. Never raises.

        Returns:
            True when an allowance was granted by this call
        """
        try:
            account = await self._store.get_account(user_id)
            if account is None or not account.is_token_user:
                metrics.record_refresh("skipped")
                return False

            if not is_refresh_due(account.last_refresh_at, self._clock(), self._interval):
                metrics.record_refresh("not_due")
                return False

            refreshed = await self._store.refresh_daily_allowance(user_id)
        except Exception as e:
            logger.warning("daily_refresh_failed", user_id=user_id, error=str(e))
            metrics.record_refresh("failed")
            metrics.record_error(type(e).__name__, "daily_refresh")
            return False

        metrics.record_refresh("refreshed" if refreshed else "not_due")
        if refreshed:
            logger.info("daily_refresh_applied", user_id=user_id)
        return refreshed

    async def refresh_all_due(self, limit: int = 500) -> int:
        """Batch grant for every due account; failures propagate to the caller."""
        count = await self._store.refresh_all_due(limit)
        if count:
            metrics.record_refresh("refreshed", count)
        return count
