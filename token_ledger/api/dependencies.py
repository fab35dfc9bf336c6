"""
FastAPI Dependencies - ledger service wiring.

The balance store and the premium resolver are process-wide: the resolver
owns the per-process status cache, so every request must see the same one.
Tests replace them through app.dependency_overrides.
"""

from fastapi import Depends
from structlog import get_logger

from token_ledger.config import settings
from token_ledger.db.session import get_read_session_factory, get_write_session_factory
from token_ledger.services.balance_store import BalanceStore, SqlBalanceStore
from token_ledger.services.daily_refresh import DailyRefreshScheduler
from token_ledger.services.ledger import TokenLedger
from token_ledger.services.premium_status import PremiumStatusCache, PremiumStatusResolver
from token_ledger.services.pricing import PricingTable
from token_ledger.services.retry_policy import RetryPolicy

logger = get_logger(__name__)

_balance_store: SqlBalanceStore | None = None
_premium_resolver: PremiumStatusResolver | None = None
_pricing_table = PricingTable(default_tokens=settings.default_model_tokens)


def get_pricing_table() -> PricingTable:
    return _pricing_table


def get_balance_store() -> BalanceStore:
    """Shared PostgreSQL balance store."""
    global _balance_store
    if _balance_store is None:
        _balance_store = SqlBalanceStore(
            session_factory=get_write_session_factory(),
            read_session_factory=get_read_session_factory(),
            initial_free_tokens=settings.initial_free_tokens,
            daily_allowance=settings.daily_allowance_tokens,
            refresh_interval=settings.daily_refresh_interval,
        )
    return _balance_store


def get_refresh_scheduler(
    store: BalanceStore = Depends(get_balance_store),
) -> DailyRefreshScheduler:
    return DailyRefreshScheduler(store, interval=settings.daily_refresh_interval)


def get_token_ledger(
    store: BalanceStore = Depends(get_balance_store),
    pricing: PricingTable = Depends(get_pricing_table),
    scheduler: DailyRefreshScheduler = Depends(get_refresh_scheduler),
) -> TokenLedger:
    return TokenLedger(
        store,
        pricing,
        refresh_scheduler=scheduler,
        max_transaction_limit=settings.transaction_list_max_limit,
    )


def get_premium_resolver() -> PremiumStatusResolver:
    """Process-wide resolver (owns the status cache)."""
    global _premium_resolver
    if _premium_resolver is None:
        _premium_resolver = PremiumStatusResolver(
            store=get_balance_store(),
            cache=PremiumStatusCache(ttl_seconds=settings.premium_cache_ttl_seconds),
            retry_policy=RetryPolicy(settings.provisioning_retry_delays),
            pricing=_pricing_table,
            self_heal=settings.self_heal_premium_flags,
        )
    return _premium_resolver


async def shutdown_services() -> None:
    """Wait for background flag repairs and drop the shared instances."""
    global _balance_store, _premium_resolver
    if _premium_resolver is not None:
        pending = _premium_resolver.pending_repairs
        await _premium_resolver.drain()
        logger.info("premium_repairs_drained", pending=pending)
    _premium_resolver = None
    _balance_store = None
