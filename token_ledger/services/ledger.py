"""
Token Ledger - per-request token accounting.

Prices requests, deducts them atomically through the balance store and
credits purchases and grants. Deduction failures are typed results, never
exceptions: running out of tokens is an expected, frequent outcome.
"""

import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog import get_logger

from token_ledger.exceptions import AccountNotFoundError, StoreUnavailableError
from token_ledger.models.api import DeductionError, TokenPool
from token_ledger.models.domain import (
    CostEstimate,
    CreditResult,
    DeductionResult,
    PaidRequestOutcome,
    RequestCostEstimate,
    TransactionData,
)
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import trace_operation
from token_ledger.services.balance_store import BalanceStore
from token_ledger.services.daily_refresh import DailyRefreshScheduler
from token_ledger.services.pricing import PricingTable

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TRANSACTION_LIMIT = 20


class TokenLedger:
    """
    Token accounting over a balance store.

    Every balance change is a single atomic store call; the ledger itself
    never reads a balance, modifies it locally and writes it back.
    """

    def __init__(
        self,
        store: BalanceStore,
        pricing: PricingTable,
        refresh_scheduler: DailyRefreshScheduler | None = None,
        max_transaction_limit: int = 100,
    ) -> None:
        self._store = store
        self._pricing = pricing
        self._refresh_scheduler = refresh_scheduler
        self._max_transaction_limit = max_transaction_limit

    # ========================================================================
    # Estimates
    # ========================================================================

    def estimate_cost(self, model_id: str) -> CostEstimate:
        """Token cost of one request against model_id. Never fails."""
        return self._pricing.estimate(model_id)

    async def estimate_request_cost(self, user_id: str, model_id: str) -> RequestCostEstimate:
        """
        Cost of a request checked against the user's current balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Store unreachable
        """
        estimate = self.estimate_cost(model_id)
        account = await self._store.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return RequestCostEstimate(
            user_id=user_id,
            model_id=model_id,
            tokens=estimate.tokens,
            tier=estimate.tier,
            paid_balance=account.paid_balance,
            free_balance=account.free_balance,
        )

    # ========================================================================
    # Deductions
    # ========================================================================

    async def deduct(
        self,
        user_id: str,
        model_id: str,
        provider_cost_usd: float = 0.0,
        provider: str = "unknown",
        request_id: str | None = None,
    ) -> DeductionResult:
        """
        Charge one request against model_id.

        Runs the daily refresh check first (best effort), then deducts the
        priced amount all-or-nothing: paid balance first, then free. A repeated
        request_id returns the original split and charges nothing.
        """
        await self._refresh(user_id)
        return await self._deduct(user_id, model_id, provider_cost_usd, provider, request_id)

    async def run_paid_request(
        self,
        user_id: str,
        model_id: str,
        call: Callable[[], Awaitable[T]],
        provider: str = "unknown",
        provider_cost_usd: float = 0.0,
        request_id: str | None = None,
    ) -> PaidRequestOutcome[T]:
        """
        Run a provider call and charge for it only after it succeeded.

        The call is not made when the balance cannot cover the estimate.
        Exceptions raised by the call propagate and nothing is charged.
        """
        await self._refresh(user_id)

        try:
            estimate = await self.estimate_request_cost(user_id, model_id)
        except AccountNotFoundError:
            return PaidRequestOutcome(
                result=None,
                deduction=DeductionResult.failed(
                    DeductionError.ACCOUNT_NOT_FOUND, self._pricing.cost(model_id).tokens_per_request
                ),
                called=False,
            )
        except Exception as e:
            logger.error(
                "paid_request_preflight_failed",
                user_id=user_id,
                model_id=model_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "paid_request")
            return PaidRequestOutcome(
                result=None,
                deduction=DeductionResult.failed(
                    DeductionError.STORE_UNAVAILABLE, self._pricing.cost(model_id).tokens_per_request
                ),
                called=False,
            )

        if not estimate.has_enough_balance:
            logger.info(
                "paid_request_blocked",
                user_id=user_id,
                model_id=model_id,
                required=estimate.tokens,
                available=estimate.current_balance,
            )
            metrics.record_deduction("blocked", 0, 0, 0.0)
            return PaidRequestOutcome(
                result=None,
                deduction=DeductionResult.failed(
                    DeductionError.INSUFFICIENT_BALANCE,
                    required=estimate.tokens,
                    paid_balance=estimate.paid_balance,
                    free_balance=estimate.free_balance,
                ),
                called=False,
            )

        result = await call()

        deduction = await self._deduct(user_id, model_id, provider_cost_usd, provider, request_id)
        if not deduction.success:
            # Balance spent concurrently between the pre-flight check and the charge
            logger.warning(
                "paid_request_unbilled",
                user_id=user_id,
                model_id=model_id,
                error=deduction.error.value if deduction.error else None,
            )
        return PaidRequestOutcome(result=result, deduction=deduction, called=True)

    # ========================================================================
    # Credits
    # ========================================================================

    async def add_tokens(
        self,
        user_id: str,
        tokens: int,
        pool: TokenPool,
        source: str,
        external_payment_ref: str | None = None,
    ) -> CreditResult:
        """
        Credit tokens to one pool.

        Raises:
            ValueError: tokens is not positive
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Store unreachable
        """
        with trace_operation("token_credit", user_id=user_id, tokens=tokens, pool=pool.value):
            result = await self._store.add_tokens(
                user_id=user_id,
                tokens=tokens,
                pool=pool,
                source=source,
                external_payment_ref=external_payment_ref,
            )
        metrics.record_credit(pool.value, tokens)
        return result

    async def recent_transactions(
        self, user_id: str, limit: int = DEFAULT_TRANSACTION_LIMIT
    ) -> list[TransactionData]:
        """Newest first, limit clamped to [1, max_transaction_limit]."""
        clamped = max(1, min(limit, self._max_transaction_limit))
        return await self._store.list_recent_transactions(user_id, clamped)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _refresh(self, user_id: str) -> None:
        if self._refresh_scheduler is not None:
            await self._refresh_scheduler.check_and_refresh(user_id)

    async def _deduct(
        self,
        user_id: str,
        model_id: str,
        provider_cost_usd: float,
        provider: str,
        request_id: str | None,
    ) -> DeductionResult:
        tokens = self._pricing.cost(model_id).tokens_per_request
        started = time.perf_counter()

        with trace_operation(
            "token_deduction", user_id=user_id, model_id=model_id, tokens=tokens
        ) as span:
            try:
                result = await self._store.deduct_tokens(
                    user_id=user_id,
                    tokens=tokens,
                    model_id=model_id,
                    provider=provider,
                    provider_cost_usd=provider_cost_usd,
                    request_id=request_id,
                )
            except AccountNotFoundError:
                logger.error("deduction_account_missing", user_id=user_id, model_id=model_id)
                metrics.record_error("AccountNotFoundError", "deduct")
                result = DeductionResult.failed(DeductionError.ACCOUNT_NOT_FOUND, tokens)
            except StoreUnavailableError as e:
                logger.error("deduction_store_unavailable", user_id=user_id, error=e.message)
                metrics.record_error("StoreUnavailableError", "deduct")
                result = DeductionResult.failed(DeductionError.STORE_UNAVAILABLE, tokens)
            except Exception as e:
                # Integrity failures and errors from stores that map nothing; the write rolled back
                logger.error(
                    "deduction_failed", user_id=user_id, error=str(e), error_type=type(e).__name__
                )
                metrics.record_error(type(e).__name__, "deduct")
                result = DeductionResult.failed(DeductionError.STORE_UNAVAILABLE, tokens)
            span.set_attribute("success", result.success)

        duration = time.perf_counter() - started
        if result.replayed:
            metrics.record_deduction("replayed", 0, 0, duration)
        elif result.success:
            metrics.record_deduction(
                "success", result.deducted_from_paid, result.deducted_from_free, duration
            )
        else:
            outcome = result.error.value if result.error else "failed"
            metrics.record_deduction(outcome, 0, 0, duration)
            logger.info(
                "deduction_rejected",
                user_id=user_id,
                model_id=model_id,
                required=tokens,
                available=result.balance,
                error=outcome,
            )
        return result
