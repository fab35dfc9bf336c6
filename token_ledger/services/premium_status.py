"""
Premium Status Resolver.

Premium access is the OR of independent signals read from one account row:
a positive paid balance, the is_premium flag, the is_paid flag and a
premium tier. The denormalized flags can drift from the balance (a purchase
that credited tokens but never set them), so a premium result also schedules
a background write-back of the flags.

Resolved statuses are cached per process for a short TTL. Fallback statuses
(account missing, store failure) are never cached.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

from structlog import get_logger

from token_ledger.exceptions import AccountNotProvisionedError, StoreUnavailableError
from token_ledger.models.api import AccountTier, EntitlementSignal, PremiumStatusSource
from token_ledger.models.domain import AccountData, FlagRepair, ModelAccess, PremiumStatus
from token_ledger.observability.metrics import metrics
from token_ledger.services.balance_store import BalanceStore
from token_ledger.services.pricing import PricingTable
from token_ledger.services.retry_policy import RetryPolicy

logger = get_logger(__name__)

PREMIUM_TIERS = frozenset({AccountTier.PREMIUM, AccountTier.ULTRA_PREMIUM})


@dataclass(frozen=True)
class EntitlementRule:
    """One signal that grants premium access on its own."""

    signal: EntitlementSignal
    description: str
    predicate: Callable[[AccountData], bool]


ENTITLEMENT_RULES: tuple[EntitlementRule, ...] = (
    EntitlementRule(
        EntitlementSignal.PAID_BALANCE,
        "Account holds purchased tokens",
        lambda account: account.paid_balance > 0,
    ),
    EntitlementRule(
        EntitlementSignal.PREMIUM_FLAG,
        "is_premium flag set",
        lambda account: account.is_premium_flag,
    ),
    EntitlementRule(
        EntitlementSignal.PAID_FLAG,
        "is_paid flag set",
        lambda account: account.is_paid_flag,
    ),
    EntitlementRule(
        EntitlementSignal.PREMIUM_TIER,
        "Tier is premium or ultra-premium",
        lambda account: account.tier in PREMIUM_TIERS,
    ),
)


class PremiumStatusCache:
    """Per-user status cache; entries at or past the TTL are never served."""

    def __init__(self, ttl_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds < 0:
            raise ValueError(f"TTL cannot be negative: {ttl_seconds}")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, PremiumStatus] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, user_id: str) -> PremiumStatus | None:
        status = self._entries.get(user_id)
        if status is None:
            return None
        if self._clock() - status.fetched_at >= self._ttl:
            del self._entries[user_id]
            return None
        return status

    def put(self, status: PremiumStatus) -> None:
        self._entries[status.user_id] = status

    def invalidate(self, user_id: str | None = None) -> None:
        """Drop one user's entry, or every entry when user_id is None."""
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._entries)


def compute_status(account: AccountData, fetched_at: float) -> PremiumStatus:
    """Evaluate every entitlement rule against one account snapshot."""
    signals = frozenset(rule.signal for rule in ENTITLEMENT_RULES if rule.predicate(account))
    return PremiumStatus(
        user_id=account.user_id,
        is_premium=bool(signals),
        paid_balance=account.paid_balance,
        total_balance=account.total_balance,
        tier=account.tier,
        source=PremiumStatusSource.STORE,
        fetched_at=fetched_at,
        signals=signals,
    )


def plan_flag_repair(account: AccountData, status: PremiumStatus) -> FlagRepair:
    """
    Flag writes that bring a premium account's denormalized flags in line.

    Non-premium statuses never produce a repair; flags are only ever raised
    here. Clearing them is the store's job when the paid balance drains.
    """
    if not status.is_premium:
        return FlagRepair()
    return FlagRepair(
        is_premium=True if not account.is_premium_flag else None,
        is_paid=True if not account.is_paid_flag else None,
        tier=AccountTier.PREMIUM if account.tier == AccountTier.FREE else None,
    )


async def reconcile_flags(
    store: BalanceStore, account: AccountData, status: PremiumStatus
) -> FlagRepair:
    """Plan and apply the flag repair for one account. Returns what was planned."""
    repair = plan_flag_repair(account, status)
    if not repair.is_empty:
        await store.apply_flag_repair(account.user_id, repair)
    return repair


def free_status(user_id: str, source: PremiumStatusSource, fetched_at: float) -> PremiumStatus:
    return PremiumStatus(
        user_id=user_id,
        is_premium=False,
        paid_balance=0,
        total_balance=0,
        tier=AccountTier.FREE,
        source=source,
        fetched_at=fetched_at,
    )


class PremiumStatusResolver:
    """
    Resolve premium entitlement with a TTL cache and self-healing flags.

    resolve() never raises: a missing account (after the provisioning
    retries) or any store failure yields a free status.
    """

    def __init__(
        self,
        store: BalanceStore,
        cache: PremiumStatusCache,
        retry_policy: RetryPolicy,
        pricing: PricingTable,
        self_heal: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._retry_policy = retry_policy
        self._pricing = pricing
        self._self_heal = self_heal
        self._pending_repairs: set[asyncio.Task[None]] = set()

    @property
    def pending_repairs(self) -> int:
        return len(self._pending_repairs)

    async def resolve(self, user_id: str) -> PremiumStatus:
        cached = self._cache.get(user_id)
        if cached is not None:
            metrics.premium_cache_hits_total.inc()
            return cached

        try:
            account = await self._load_account(user_id)
        except StoreUnavailableError as e:
            logger.error("premium_status_store_error", user_id=user_id, error=e.message)
            metrics.record_premium_resolution(PremiumStatusSource.STORE_ERROR.value, False)
            return free_status(user_id, PremiumStatusSource.STORE_ERROR, self._cache.now())
        except AccountNotProvisionedError as e:
            logger.warning("premium_status_no_account", user_id=user_id, attempts=e.attempts)
            metrics.record_premium_resolution(PremiumStatusSource.NO_ACCOUNT.value, False)
            return free_status(user_id, PremiumStatusSource.NO_ACCOUNT, self._cache.now())
        except Exception as e:
            # Pool timeouts and connect errors raised outside the driver layer
            logger.error(
                "premium_status_store_error",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_premium_resolution(PremiumStatusSource.STORE_ERROR.value, False)
            return free_status(user_id, PremiumStatusSource.STORE_ERROR, self._cache.now())

        status = compute_status(account, self._cache.now())
        if self._self_heal:
            self._schedule_repair(account, status)

        self._cache.put(status)
        metrics.record_premium_resolution(status.source.value, status.is_premium)
        logger.debug(
            "premium_status_resolved",
            user_id=user_id,
            is_premium=status.is_premium,
            signals=sorted(signal.value for signal in status.signals),
        )
        return status

    def invalidate(self, user_id: str | None = None) -> None:
        """Drop cached status; call after any purchase or tier change."""
        self._cache.invalidate(user_id)
        logger.debug("premium_cache_invalidated", user_id=user_id)

    async def check_model_access(self, user_id: str, model_id: str) -> ModelAccess:
        """Premium-gated models are allowed only for premium users."""
        entry = self._pricing.cost(model_id)
        status = await self.resolve(user_id)
        allowed = status.is_premium or not entry.requires_premium
        return ModelAccess(
            user_id=user_id,
            model_id=model_id,
            allowed=allowed,
            requires_premium=entry.requires_premium,
            is_premium=status.is_premium,
            reason=None if allowed else "premium_required",
        )

    async def drain(self) -> None:
        """Wait for background flag repairs scheduled so far."""
        while self._pending_repairs:
            await asyncio.gather(*list(self._pending_repairs), return_exceptions=True)

    async def _load_account(self, user_id: str) -> AccountData:
        """
        Read the account, retrying while it does not exist yet.

        Sign-up provisions the row asynchronously, so a first read can race it.

        Raises:
            AccountNotProvisionedError: Still missing after every retry
            StoreUnavailableError: Database unreachable (not retried)
        """
        account, attempts = await self._retry_policy.run(
            lambda: self._store.get_account(user_id),
            should_retry=lambda found: found is None,
        )
        if account is None:
            raise AccountNotProvisionedError(user_id, attempts)
        return account

    def _schedule_repair(self, account: AccountData, status: PremiumStatus) -> None:
        if plan_flag_repair(account, status).is_empty:
            return
        task = asyncio.create_task(self._repair_flags(account, status))
        self._pending_repairs.add(task)
        task.add_done_callback(self._pending_repairs.discard)

    async def _repair_flags(self, account: AccountData, status: PremiumStatus) -> None:
        try:
            repair = await reconcile_flags(self._store, account, status)
        except Exception as e:
            # Runs detached from any request; failure only delays the repair
            logger.warning("premium_flag_repair_failed", user_id=account.user_id, error=str(e))
            metrics.premium_flag_repairs_total.labels(outcome="failed").inc()
            return
        logger.info(
            "premium_flag_repair_applied",
            user_id=account.user_id,
            is_premium=repair.is_premium,
            is_paid=repair.is_paid,
            tier=repair.tier.value if repair.tier else None,
        )
        metrics.premium_flag_repairs_total.labels(outcome="applied").inc()
