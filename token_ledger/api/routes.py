"""
API Routes - FastAPI endpoints for ledger operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from structlog import get_logger

from token_ledger.api.dependencies import (
    get_balance_store,
    get_premium_resolver,
    get_pricing_table,
    get_refresh_scheduler,
    get_token_ledger,
)
from token_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    StoreUnavailableError,
    WriteVerificationError,
)
from token_ledger.models.api import (
    AccountResponse,
    AddTokensRequest,
    BatchRefreshResponse,
    CostEstimateResponse,
    CreditResponse,
    DeductionError,
    DeductRequest,
    DeductResponse,
    InsufficientBalanceDetail,
    ModelAccessResponse,
    PremiumStatusResponse,
    ProvisionAccountRequest,
    RefreshResponse,
    RequestCostEstimateResponse,
    TransactionItem,
    TransactionListResponse,
)
from token_ledger.models.domain import AccountData, TransactionData
from token_ledger.services.balance_store import BalanceStore
from token_ledger.services.daily_refresh import DailyRefreshScheduler
from token_ledger.services.ledger import TokenLedger
from token_ledger.services.premium_status import PremiumStatusResolver
from token_ledger.services.pricing import PricingTable, format_token_display

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/ledger", tags=["ledger"])


def _account_response(account: AccountData) -> AccountResponse:
    return AccountResponse(
        user_id=account.user_id,
        free_balance=account.free_balance,
        paid_balance=account.paid_balance,
        total_balance=account.total_balance,
        daily_allowance=account.daily_allowance,
        last_refresh_at=account.last_refresh_at.isoformat() if account.last_refresh_at else None,
        tier=account.tier,
        is_premium=account.is_premium_flag,
        is_paid=account.is_paid_flag,
        is_token_user=account.is_token_user,
        lifetime_purchased=account.lifetime_purchased,
        lifetime_used=account.lifetime_used,
        balance_display=format_token_display(account.total_balance),
    )


def _transaction_item(txn: TransactionData) -> TransactionItem:
    return TransactionItem(
        transaction_id=txn.transaction_id,
        transaction_type=txn.transaction_type,
        tokens=txn.tokens,
        model_id=txn.model_id,
        provider=txn.provider,
        deducted_from_paid=txn.deducted_from_paid,
        deducted_from_free=txn.deducted_from_free,
        provider_cost_usd=txn.provider_cost_usd,
        pool=txn.pool,
        source=txn.source,
        created_at=txn.created_at.isoformat(),
    )


def _store_unavailable(exc: StoreUnavailableError) -> HTTPException:
    logger.warning("request_store_unavailable", error=exc.message)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Balance store unavailable",
    )


# ============================================================================
# Accounts
# ============================================================================


@router.post(
    "/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def provision_account(
    request: ProvisionAccountRequest,
    store: BalanceStore = Depends(get_balance_store),
) -> AccountResponse:
    """
    Get or create an account.

    New accounts are seeded with the initial free token grant. Calling this
    again for an existing user returns the account unchanged.
    """
    try:
        account = await store.provision_account(request.user_id, request.is_token_user)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create account",
        ) from exc
    return _account_response(account)


@router.get("/accounts/{user_id}", response_model=AccountResponse)
async def get_account(
    user_id: str,
    store: BalanceStore = Depends(get_balance_store),
) -> AccountResponse:
    """Get account balances and tier flags."""
    try:
        account = await store.get_account(user_id)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return _account_response(account)


# ============================================================================
# Pricing
# ============================================================================


@router.get("/pricing/{model_id}", response_model=CostEstimateResponse)
async def get_model_cost(
    model_id: str,
    pricing: PricingTable = Depends(get_pricing_table),
) -> CostEstimateResponse:
    """Token cost of one request. Unknown models get the default price."""
    entry = pricing.cost(model_id)
    return CostEstimateResponse(
        model_id=model_id,
        name=entry.name,
        provider=entry.provider,
        tokens=entry.tokens_per_request,
        tier=entry.tier,
        requires_premium=entry.requires_premium,
    )


@router.get("/accounts/{user_id}/estimate", response_model=RequestCostEstimateResponse)
async def estimate_request_cost(
    user_id: str,
    model_id: str = Query(..., min_length=1),
    ledger: TokenLedger = Depends(get_token_ledger),
) -> RequestCostEstimateResponse:
    """Cost of a request checked against the account's current balance."""
    try:
        estimate = await ledger.estimate_request_cost(user_id, model_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Account not found"
        ) from exc
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return RequestCostEstimateResponse(
        user_id=estimate.user_id,
        model_id=estimate.model_id,
        tokens=estimate.tokens,
        tier=estimate.tier,
        current_balance=estimate.current_balance,
        has_enough_balance=estimate.has_enough_balance,
        shortfall=estimate.shortfall,
    )


# ============================================================================
# Deductions and credits
# ============================================================================


@router.post(
    "/accounts/{user_id}/deductions",
    response_model=DeductResponse,
    status_code=status.HTTP_201_CREATED,
)
async def deduct_tokens(
    user_id: str,
    request: DeductRequest,
    ledger: TokenLedger = Depends(get_token_ledger),
) -> DeductResponse:
    """
    Charge one completed AI request.

    Call only after the provider call succeeded. Repeating a request_id
    returns the original deduction without charging again.
    """
    result = await ledger.deduct(
        user_id,
        request.model_id,
        provider_cost_usd=request.provider_cost_usd,
        provider=request.provider,
        request_id=request.request_id,
    )

    if result.error == DeductionError.INSUFFICIENT_BALANCE:
        detail = InsufficientBalanceDetail(
            required=result.required,
            available=result.balance,
            shortfall=result.shortfall,
            message=f"Insufficient tokens. Need {result.required}, have {result.balance}",
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=detail.model_dump(mode="json"),
        )
    if result.error == DeductionError.ACCOUNT_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if result.error == DeductionError.STORE_UNAVAILABLE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Balance store unavailable",
        )

    return DeductResponse(
        success=result.success,
        balance=result.balance,
        paid_balance=result.paid_balance,
        free_balance=result.free_balance,
        deducted_from_paid=result.deducted_from_paid,
        deducted_from_free=result.deducted_from_free,
        transaction_id=result.transaction_id,
        replayed=result.replayed,
    )


@router.post(
    "/accounts/{user_id}/credits",
    response_model=CreditResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_tokens(
    user_id: str,
    request: AddTokensRequest,
    ledger: TokenLedger = Depends(get_token_ledger),
    resolver: PremiumStatusResolver = Depends(get_premium_resolver),
) -> CreditResponse:
    """
    Credit purchased or granted tokens.

    Drops the cached premium status so the purchase is visible immediately.
    """
    try:
        result = await ledger.add_tokens(
            user_id,
            request.tokens,
            request.pool,
            request.source,
            external_payment_ref=request.external_payment_ref,
        )
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Account not found"
        ) from exc
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    resolver.invalidate(user_id)

    return CreditResponse(
        success=result.success,
        balance=result.balance,
        paid_balance=result.paid_balance,
        free_balance=result.free_balance,
        transaction_id=result.transaction_id,
    )


@router.get("/accounts/{user_id}/transactions", response_model=TransactionListResponse)
async def list_transactions(
    user_id: str,
    limit: int = Query(20, ge=1),
    ledger: TokenLedger = Depends(get_token_ledger),
) -> TransactionListResponse:
    """Recent ledger transactions, newest first."""
    try:
        transactions = await ledger.recent_transactions(user_id, limit)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return TransactionListResponse(
        user_id=user_id,
        transactions=[_transaction_item(txn) for txn in transactions],
    )


# ============================================================================
# Daily refresh
# ============================================================================


@router.post("/accounts/{user_id}/refresh", response_model=RefreshResponse)
async def refresh_daily_allowance(
    user_id: str,
    scheduler: DailyRefreshScheduler = Depends(get_refresh_scheduler),
) -> RefreshResponse:
    """Grant the daily allowance if due. Best effort; never fails."""
    refreshed = await scheduler.check_and_refresh(user_id)
    return RefreshResponse(user_id=user_id, refreshed=refreshed)


@router.post("/refresh/due", response_model=BatchRefreshResponse)
async def refresh_all_due(
    limit: int = Query(500, ge=1, le=10000),
    scheduler: DailyRefreshScheduler = Depends(get_refresh_scheduler),
) -> BatchRefreshResponse:
    """Grant the allowance to every due account (cron entry point)."""
    try:
        count = await scheduler.refresh_all_due(limit)
    except StoreUnavailableError as exc:
        raise _store_unavailable(exc) from exc
    return BatchRefreshResponse(
        accounts_refreshed=count,
        timestamp=datetime.now(UTC).isoformat(),
    )


# ============================================================================
# Premium status
# ============================================================================


@router.get("/accounts/{user_id}/premium", response_model=PremiumStatusResponse)
async def get_premium_status(
    user_id: str,
    resolver: PremiumStatusResolver = Depends(get_premium_resolver),
) -> PremiumStatusResponse:
    """Resolve premium entitlement. Degrades to free on store errors."""
    premium = await resolver.resolve(user_id)
    return PremiumStatusResponse(
        user_id=premium.user_id,
        is_premium=premium.is_premium,
        paid_balance=premium.paid_balance,
        total_balance=premium.total_balance,
        tier=premium.tier,
        source=premium.source,
        signals=sorted(premium.signals, key=lambda signal: signal.value),
    )


@router.delete("/accounts/{user_id}/premium/cache", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_premium_cache(
    user_id: str,
    resolver: PremiumStatusResolver = Depends(get_premium_resolver),
) -> Response:
    """Drop the cached premium status for a user."""
    resolver.invalidate(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/accounts/{user_id}/models/{model_id}/access",
    response_model=ModelAccessResponse,
)
async def check_model_access(
    user_id: str,
    model_id: str,
    resolver: PremiumStatusResolver = Depends(get_premium_resolver),
) -> ModelAccessResponse:
    """Whether the account may use a model."""
    access = await resolver.check_model_access(user_id, model_id)
    return ModelAccessResponse(
        user_id=access.user_id,
        model_id=access.model_id,
        allowed=access.allowed,
        requires_premium=access.requires_premium,
        is_premium=access.is_premium,
        reason=access.reason,
    )
