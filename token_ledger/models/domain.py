"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from token_ledger.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    StoreUnavailableError,
)
from token_ledger.models.api import (
    AccountTier,
    DeductionError,
    EntitlementSignal,
    ModelTier,
    PremiumStatusSource,
    TokenPool,
    TransactionType,
)

T = TypeVar("T")


@dataclass(frozen=True)
class AccountData:
    """Immutable account snapshot as read from the balance store."""

    user_id: str
    free_balance: int
    paid_balance: int
    daily_allowance: int
    last_refresh_at: datetime | None
    tier: AccountTier
    is_premium_flag: bool
    is_paid_flag: bool
    is_token_user: bool
    lifetime_purchased: int
    lifetime_used: int
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.free_balance < 0:
            raise ValueError(f"Free balance cannot be negative: {self.free_balance}")
        if self.paid_balance < 0:
            raise ValueError(f"Paid balance cannot be negative: {self.paid_balance}")

    @property
    def total_balance(self) -> int:
        """Spendable tokens across both pools."""
        return self.free_balance + self.paid_balance


@dataclass(frozen=True)
class PricingEntry:
    """Token price of one request against a model."""

    model_id: str
    name: str
    provider: str
    tokens_per_request: int
    tier: ModelTier
    paid_only: bool = False

    def __post_init__(self) -> None:
        """Validate pricing configuration."""
        if not self.model_id:
            raise ValueError("Model ID required")
        if self.tokens_per_request <= 0:
            raise ValueError(f"Tokens per request must be positive: {self.tokens_per_request}")

    @property
    def requires_premium(self) -> bool:
        """Paid-only models outside the free tier are gated on premium status."""
        return self.tier != ModelTier.FREE and self.paid_only


@dataclass(frozen=True)
class CostEstimate:
    """Pure cost estimate for a model."""

    model_id: str
    tokens: int
    tier: ModelTier

    @property
    def tier_label(self) -> str:
        return self.tier.value.replace("-", " ").title()


@dataclass(frozen=True)
class RequestCostEstimate:
    """Cost estimate checked against an account balance."""

    user_id: str
    model_id: str
    tokens: int
    tier: ModelTier
    paid_balance: int
    free_balance: int

    @property
    def current_balance(self) -> int:
        return self.paid_balance + self.free_balance

    @property
    def has_enough_balance(self) -> bool:
        return self.current_balance >= self.tokens

    @property
    def shortfall(self) -> int:
        return max(self.tokens - self.current_balance, 0)


@dataclass(frozen=True)
class PoolSplit:
    """How many tokens a deduction takes from each pool."""

    from_paid: int
    from_free: int

    def __post_init__(self) -> None:
        if self.from_paid < 0 or self.from_free < 0:
            raise ValueError(f"Pool split cannot be negative: {self}")

    @property
    def total(self) -> int:
        return self.from_paid + self.from_free


@dataclass(frozen=True)
class DeductionResult:
    """
    Outcome of a deduction.

    Failures are values, not exceptions: insufficient balance is an expected,
    frequent outcome and must not unwind the caller.
    """

    success: bool
    balance: int
    paid_balance: int
    free_balance: int
    required: int
    deducted_from_paid: int = 0
    deducted_from_free: int = 0
    transaction_id: UUID | None = None
    error: DeductionError | None = None
    replayed: bool = False

    @classmethod
    def succeeded(
        cls,
        paid_balance: int,
        free_balance: int,
        split: PoolSplit,
        transaction_id: UUID,
        replayed: bool = False,
    ) -> "DeductionResult":
        return cls(
            success=True,
            balance=paid_balance + free_balance,
            paid_balance=paid_balance,
            free_balance=free_balance,
            required=split.total,
            deducted_from_paid=split.from_paid,
            deducted_from_free=split.from_free,
            transaction_id=transaction_id,
            replayed=replayed,
        )

    @classmethod
    def failed(
        cls,
        error: DeductionError,
        required: int,
        paid_balance: int = 0,
        free_balance: int = 0,
    ) -> "DeductionResult":
        return cls(
            success=False,
            balance=paid_balance + free_balance,
            paid_balance=paid_balance,
            free_balance=free_balance,
            required=required,
            error=error,
        )

    @property
    def shortfall(self) -> int:
        """Tokens missing when the deduction was rejected for insufficient balance."""
        if self.error != DeductionError.INSUFFICIENT_BALANCE:
            return 0
        return max(self.required - self.balance, 0)

    def raise_for_error(self, user_id: str) -> None:
        """Raise the matching LedgerError for a failed result; no-op on success."""
        if self.error is None:
            return
        if self.error == DeductionError.INSUFFICIENT_BALANCE:
            raise InsufficientBalanceError(balance=self.balance, required=self.required)
        if self.error == DeductionError.ACCOUNT_NOT_FOUND:
            raise AccountNotFoundError(user_id)
        raise StoreUnavailableError(f"deduction for {user_id} not applied")


@dataclass(frozen=True)
class CreditResult:
    """Outcome of an atomic credit."""

    success: bool
    balance: int
    paid_balance: int
    free_balance: int
    transaction_id: UUID | None


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction after persistence."""

    transaction_id: UUID
    user_id: str
    transaction_type: TransactionType
    tokens: int
    deducted_from_paid: int
    deducted_from_free: int
    provider_cost_usd: float
    created_at: datetime
    model_id: str | None = None
    provider: str | None = None
    pool: TokenPool | None = None
    source: str | None = None
    external_payment_ref: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class PremiumStatus:
    """Resolved premium entitlement, as cached per user."""

    user_id: str
    is_premium: bool
    paid_balance: int
    total_balance: int
    tier: AccountTier
    source: PremiumStatusSource
    fetched_at: float
    signals: frozenset[EntitlementSignal] = field(default_factory=frozenset)


@dataclass(frozen=True)
class FlagRepair:
    """Denormalized flag writes needed to match a computed premium status."""

    is_premium: bool | None = None
    is_paid: bool | None = None
    tier: AccountTier | None = None

    @property
    def is_empty(self) -> bool:
        return self.is_premium is None and self.is_paid is None and self.tier is None


@dataclass(frozen=True)
class ModelAccess:
    """Access decision for one model."""

    user_id: str
    model_id: str
    allowed: bool
    requires_premium: bool
    is_premium: bool
    reason: str | None = None


@dataclass(frozen=True)
class PaidRequestOutcome(Generic[T]):
    """Result of a provider call charged after success."""

    result: T | None
    deduction: DeductionResult
    called: bool
