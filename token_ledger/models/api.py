"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class AccountTier(str, Enum):
    """Coarse entitlement level of an account."""

    FREE = "free"
    PREMIUM = "premium"
    ULTRA_PREMIUM = "ultra-premium"


class ModelTier(str, Enum):
    """Quality tier of an AI model in the pricing table."""

    FREE = "free"
    BUDGET = "budget"
    MID = "mid"
    PREMIUM = "premium"
    ULTRA_PREMIUM = "ultra-premium"


class TokenPool(str, Enum):
    """Balance pool a credit is applied to."""

    PAID = "paid"
    FREE = "free"


class TransactionType(str, Enum):
    """Ledger transaction type enumeration."""

    DEDUCTION = "deduction"
    PURCHASE = "purchase"
    GRANT = "grant"
    DAILY_REFRESH = "daily_refresh"


class DeductionError(str, Enum):
    """Reason a deduction did not go through."""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    ACCOUNT_NOT_FOUND = "account_not_found"
    STORE_UNAVAILABLE = "store_unavailable"


class EntitlementSignal(str, Enum):
    """Independent indicators that an account has premium access."""

    PAID_BALANCE = "paid_balance"
    PREMIUM_FLAG = "premium_flag"
    PAID_FLAG = "paid_flag"
    PREMIUM_TIER = "premium_tier"


class PremiumStatusSource(str, Enum):
    """Where a premium status value came from."""

    STORE = "store"
    NO_ACCOUNT = "no_account"
    STORE_ERROR = "store_error"


# ============================================================================
# Account Models
# ============================================================================


class ProvisionAccountRequest(BaseModel):
    """POST /v1/ledger/accounts request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    is_token_user: bool = Field(
        default=True, description="Whether the account receives the daily free allowance"
    )


class AccountResponse(BaseModel):
    """Account balances and tier flags."""

    user_id: str
    free_balance: int
    paid_balance: int
    total_balance: int
    daily_allowance: int
    last_refresh_at: str | None = Field(None, description="ISO 8601 timestamp")
    tier: AccountTier
    is_premium: bool
    is_paid: bool
    is_token_user: bool
    lifetime_purchased: int
    lifetime_used: int
    balance_display: str = Field(..., description="Human readable total, e.g. 1.5K")


# ============================================================================
# Pricing Models
# ============================================================================


class CostEstimateResponse(BaseModel):
    """Token cost of a single request against a model."""

    model_id: str
    name: str
    provider: str
    tokens: int
    tier: ModelTier
    requires_premium: bool


class RequestCostEstimateResponse(BaseModel):
    """Token cost of a request checked against the caller's balance."""

    user_id: str
    model_id: str
    tokens: int
    tier: ModelTier
    current_balance: int
    has_enough_balance: bool
    shortfall: int


# ============================================================================
# Deduction Models
# ============================================================================


class DeductRequest(BaseModel):
    """POST /v1/ledger/accounts/{user_id}/deductions request body."""

    model_id: str = Field(..., min_length=1, max_length=255)
    provider: str = Field(default="unknown", min_length=1, max_length=100)
    provider_cost_usd: float = Field(default=0.0, ge=0)
    request_id: str | None = Field(
        None,
        max_length=255,
        description="Caller request id; a repeated id is charged only once",
    )


class DeductResponse(BaseModel):
    """Successful deduction."""

    success: bool
    balance: int
    paid_balance: int
    free_balance: int
    deducted_from_paid: int
    deducted_from_free: int
    transaction_id: UUID | None
    replayed: bool = False


class InsufficientBalanceDetail(BaseModel):
    """Body of a 402 response: required vs. available tokens."""

    error: DeductionError = DeductionError.INSUFFICIENT_BALANCE
    required: int
    available: int
    shortfall: int
    message: str


# ============================================================================
# Credit Models
# ============================================================================


class AddTokensRequest(BaseModel):
    """POST /v1/ledger/accounts/{user_id}/credits request body."""

    tokens: int = Field(..., gt=0)
    pool: TokenPool = TokenPool.PAID
    source: str = Field(..., min_length=1, max_length=255)
    external_payment_ref: str | None = Field(None, max_length=255)


class CreditResponse(BaseModel):
    """Result of an atomic credit."""

    success: bool
    balance: int
    paid_balance: int
    free_balance: int
    transaction_id: UUID | None


# ============================================================================
# Refresh Models
# ============================================================================


class RefreshResponse(BaseModel):
    """Result of an opportunistic daily refresh check."""

    user_id: str
    refreshed: bool


class BatchRefreshResponse(BaseModel):
    """Result of a batch refresh of all due accounts."""

    accounts_refreshed: int
    timestamp: str = Field(..., description="ISO 8601 timestamp")


# ============================================================================
# Premium Status Models
# ============================================================================


class PremiumStatusResponse(BaseModel):
    """Resolved premium entitlement for an account."""

    user_id: str
    is_premium: bool
    paid_balance: int
    total_balance: int
    tier: AccountTier
    source: PremiumStatusSource
    signals: list[EntitlementSignal]


class ModelAccessResponse(BaseModel):
    """Whether an account may use a model."""

    user_id: str
    model_id: str
    allowed: bool
    requires_premium: bool
    is_premium: bool
    reason: str | None = None


# ============================================================================
# Transaction Models
# ============================================================================


class TransactionItem(BaseModel):
    """Single ledger transaction for display."""

    transaction_id: UUID
    transaction_type: TransactionType
    tokens: int
    model_id: str | None
    provider: str | None
    deducted_from_paid: int
    deducted_from_free: int
    provider_cost_usd: float
    pool: TokenPool | None
    source: str | None
    created_at: str


class TransactionListResponse(BaseModel):
    """Recent transactions, newest first."""

    user_id: str
    transactions: list[TransactionItem]
