"""
Tests for TokenLedger.

Deductions, credits, estimates and the charge-after-success helper, run
against the in-memory balance store.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from conftest import START_TIME, InMemoryBalanceStore
from token_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    StoreUnavailableError,
    WriteVerificationError,
)
from token_ledger.models.api import AccountTier, DeductionError, ModelTier, TokenPool, TransactionType
from token_ledger.services.ledger import TokenLedger
from token_ledger.services.pricing import PricingTable


class TestEstimates:
    """Tests for cost estimates."""

    def test_estimate_cost_is_pure(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        estimate = ledger.estimate_cost("grok-4-fast")
        assert estimate.tokens == 800
        assert estimate.tier == ModelTier.FREE
        assert store.get_account_calls == 0

    def test_estimate_cost_unknown_model(self, ledger: TokenLedger):
        estimate = ledger.estimate_cost("mystery-model")
        assert estimate.tokens == 1000
        assert estimate.tier == ModelTier.MID

    async def test_estimate_request_cost(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=500)

        estimate = await ledger.estimate_request_cost("user-1", "claude-sonnet")

        assert estimate.tokens == 120000
        assert (estimate.paid_balance, estimate.free_balance) == (0, 500)
        assert estimate.current_balance == 500
        assert estimate.has_enough_balance is False
        assert estimate.shortfall == 119500

    async def test_estimate_request_cost_missing_account(self, ledger: TokenLedger):
        with pytest.raises(AccountNotFoundError):
            await ledger.estimate_request_cost("ghost", "grok-4-fast")


class TestDeduct:
    """Tests for deduct()."""

    async def test_free_user_deduction(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        """5000 free, 800-token model: all from free."""
        store.seed("user-1", free_balance=5000)

        result = await ledger.deduct("user-1", "grok-4-fast", provider_cost_usd=0.0001)

        assert result.success is True
        assert result.balance == 4200
        assert result.deducted_from_free == 800
        assert result.deducted_from_paid == 0
        assert store.accounts["user-1"].free_balance == 4200
        txn = store.transactions[-1]
        assert txn.transaction_type == TransactionType.DEDUCTION
        assert txn.model_id == "grok-4-fast"
        assert txn.provider_cost_usd == 0.0001

    async def test_paid_balance_spent_first(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        """paid=1000, free=5000, cost 800: paid 200, free 5000."""
        store.seed("user-1", free_balance=5000, paid_balance=1000, is_paid=True, is_premium=True)

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.success is True
        assert result.deducted_from_paid == 800
        assert result.deducted_from_free == 0
        assert result.paid_balance == 200
        assert result.free_balance == 5000

    async def test_split_across_pools(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=5000, paid_balance=300)

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.deducted_from_paid == 300
        assert result.deducted_from_free == 500
        assert result.balance == 4500

    async def test_insufficient_balance_leaves_account_untouched(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        """500 tokens against a 120000-token model."""
        store.seed("user-1", free_balance=500)

        result = await ledger.deduct("user-1", "claude-sonnet")

        assert result.success is False
        assert result.error == DeductionError.INSUFFICIENT_BALANCE
        assert result.required == 120000
        assert result.balance == 500
        assert result.shortfall == 119500
        assert store.accounts["user-1"].free_balance == 500
        assert store.transactions == []

    async def test_exact_balance_succeeds(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=300, paid_balance=500)

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.success is True
        assert result.balance == 0

    async def test_missing_account_is_typed_failure(self, ledger: TokenLedger):
        result = await ledger.deduct("ghost", "grok-4-fast")
        assert result.success is False
        assert result.error == DeductionError.ACCOUNT_NOT_FOUND

    async def test_store_unavailable_is_typed_failure(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)
        store.fail_with = StoreUnavailableError("connection refused")

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.success is False
        assert result.error == DeductionError.STORE_UNAVAILABLE

    @pytest.mark.parametrize(
        "error",
        [
            PoolTimeoutError("QueuePool limit of size 5 overflow 10 reached"),
            ConnectionRefusedError(111, "Connection refused"),
            DataIntegrityError("paid balance went negative"),
            WriteVerificationError("deduction not persisted"),
        ],
    )
    async def test_any_store_error_is_typed_failure(
        self, ledger: TokenLedger, store: InMemoryBalanceStore, error: Exception
    ):
        store.seed("user-1", free_balance=5000)
        store.fail_with = error

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.success is False
        assert result.error == DeductionError.STORE_UNAVAILABLE
        assert result.required == 800
        assert store.accounts["user-1"].free_balance == 5000

    async def test_missing_account_counted_as_error(self, ledger: TokenLedger):
        with patch("token_ledger.services.ledger.metrics") as mock_metrics:
            await ledger.deduct("ghost", "grok-4-fast")

        mock_metrics.record_error.assert_called_once_with("AccountNotFoundError", "deduct")

    async def test_draining_paid_balance_clears_premium_flags(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed(
            "user-1",
            free_balance=5000,
            paid_balance=800,
            tier=AccountTier.PREMIUM,
            is_premium=True,
            is_paid=True,
        )

        await ledger.deduct("user-1", "grok-4-fast")

        account = store.accounts["user-1"]
        assert account.paid_balance == 0
        assert account.is_premium_flag is False
        assert account.is_paid_flag is False
        assert account.tier == AccountTier.FREE

    async def test_free_only_deduction_keeps_flags(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        """A flagged account with no paid tokens keeps its flags on free spend."""
        store.seed("user-1", free_balance=5000, tier=AccountTier.PREMIUM, is_premium=True)

        await ledger.deduct("user-1", "grok-4-fast")

        assert store.accounts["user-1"].is_premium_flag is True

    async def test_repeated_request_id_charges_once(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)

        first = await ledger.deduct("user-1", "grok-4-fast", request_id="req-1")
        second = await ledger.deduct("user-1", "grok-4-fast", request_id="req-1")

        assert first.success and second.success
        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert second.deducted_from_free == 800
        assert store.accounts["user-1"].free_balance == 4200
        assert len(store.transactions) == 1

    async def test_distinct_request_ids_charge_separately(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)

        await ledger.deduct("user-1", "grok-4-fast", request_id="req-1")
        await ledger.deduct("user-1", "grok-4-fast", request_id="req-2")

        assert store.accounts["user-1"].free_balance == 3400

    async def test_deduct_runs_due_refresh_first(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        """A due allowance is granted before pricing against the balance."""
        store.seed("user-1", free_balance=0, last_refresh_at=START_TIME - timedelta(hours=25))

        result = await ledger.deduct("user-1", "grok-4-fast")

        assert result.success is True
        assert result.free_balance == 200

    async def test_ledger_without_scheduler(self, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=0, last_refresh_at=START_TIME - timedelta(hours=25))
        bare = TokenLedger(store, PricingTable())

        result = await bare.deduct("user-1", "grok-4-fast")

        assert result.error == DeductionError.INSUFFICIENT_BALANCE

    async def test_concurrent_deductions_never_overspend(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        """Balance 1000, two 800-token deductions: exactly one succeeds."""
        store.seed("user-1", free_balance=1000)

        results = await asyncio.gather(
            ledger.deduct("user-1", "grok-4-fast"),
            ledger.deduct("user-1", "grok-4-fast"),
        )

        assert sorted(r.success for r in results) == [False, True]
        assert store.accounts["user-1"].free_balance == 200


class TestRunPaidRequest:
    """Tests for charge-after-success."""

    async def test_charges_after_successful_call(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)

        async def call():
            return "response"

        outcome = await ledger.run_paid_request("user-1", "grok-4-fast", call, provider="xai")

        assert outcome.called is True
        assert outcome.result == "response"
        assert outcome.deduction.success is True
        assert store.accounts["user-1"].free_balance == 4200

    async def test_failed_call_charges_nothing(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)

        async def call():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError, match="provider down"):
            await ledger.run_paid_request("user-1", "grok-4-fast", call)

        assert store.accounts["user-1"].free_balance == 5000
        assert store.transactions == []

    async def test_insufficient_balance_blocks_call(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=300, paid_balance=200)
        calls = []

        async def call():
            calls.append(1)
            return "response"

        outcome = await ledger.run_paid_request("user-1", "claude-sonnet", call)

        assert outcome.called is False
        assert calls == []
        assert outcome.deduction.error == DeductionError.INSUFFICIENT_BALANCE
        assert outcome.deduction.shortfall == 119500
        assert outcome.deduction.paid_balance == 200
        assert outcome.deduction.free_balance == 300
        assert outcome.deduction.balance == 500

    async def test_store_error_blocks_call(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1", free_balance=5000)
        store.fail_with = ConnectionRefusedError(111, "Connection refused")
        calls = []

        async def call():
            calls.append(1)
            return "response"

        outcome = await ledger.run_paid_request("user-1", "grok-4-fast", call)

        assert outcome.called is False
        assert calls == []
        assert outcome.deduction.error == DeductionError.STORE_UNAVAILABLE

    async def test_missing_account_blocks_call(self, ledger: TokenLedger):
        async def call():
            return "response"

        outcome = await ledger.run_paid_request("ghost", "grok-4-fast", call)

        assert outcome.called is False
        assert outcome.deduction.error == DeductionError.ACCOUNT_NOT_FOUND


class TestAddTokens:
    """Tests for credits."""

    async def test_paid_credit_sets_flags(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=100)

        result = await ledger.add_tokens("user-1", 10000, TokenPool.PAID, "stripe", "pi_123")

        account = store.accounts["user-1"]
        assert result.success is True
        assert result.paid_balance == 10000
        assert result.balance == 10100
        assert account.is_paid_flag is True
        assert account.is_premium_flag is True
        assert account.tier == AccountTier.PREMIUM
        assert account.lifetime_purchased == 10000
        assert store.transactions[-1].transaction_type == TransactionType.PURCHASE

    async def test_free_credit_is_a_grant(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=100)

        result = await ledger.add_tokens("user-1", 500, TokenPool.FREE, "promo")

        assert result.free_balance == 600
        assert store.accounts["user-1"].is_premium_flag is False
        assert store.transactions[-1].transaction_type == TransactionType.GRANT

    async def test_credit_missing_account_raises(self, ledger: TokenLedger):
        with pytest.raises(AccountNotFoundError):
            await ledger.add_tokens("ghost", 100, TokenPool.PAID, "stripe")

    async def test_non_positive_credit_rejected(
        self, ledger: TokenLedger, store: InMemoryBalanceStore
    ):
        store.seed("user-1")
        with pytest.raises(ValueError):
            await ledger.add_tokens("user-1", 0, TokenPool.PAID, "stripe")


class TestRecentTransactions:
    """Tests for transaction history."""

    async def test_newest_first(self, ledger: TokenLedger, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=5000)
        await ledger.deduct("user-1", "grok-4-fast")
        await ledger.add_tokens("user-1", 100, TokenPool.FREE, "promo")

        history = await ledger.recent_transactions("user-1")

        assert [t.transaction_type for t in history] == [
            TransactionType.GRANT,
            TransactionType.DEDUCTION,
        ]

    async def test_limit_clamped(self, store: InMemoryBalanceStore):
        store.seed("user-1", free_balance=5000)
        capped = TokenLedger(store, PricingTable(), max_transaction_limit=2)
        for _ in range(4):
            await capped.deduct("user-1", "grok-4-fast")

        assert len(await capped.recent_transactions("user-1", limit=50)) == 2
        assert len(await capped.recent_transactions("user-1", limit=0)) == 1
