"""
Balance Store - atomic account mutations.

Every mutation is a single transaction holding a row lock on the account
(SELECT ... FOR UPDATE), so concurrent sessions for the same user serialize
at the database and never perform client-side read-modify-write.

Write pattern (per mutation):
1. Lock account row
2. Compute the new balances
3. Append the transaction record and flush
4. Read back and verify
5. Commit
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Protocol
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from token_ledger.db.models import Account, TokenTransaction
from token_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    StoreUnavailableError,
    WriteVerificationError,
)
from token_ledger.models.api import AccountTier, DeductionError, TokenPool, TransactionType
from token_ledger.models.domain import (
    AccountData,
    CreditResult,
    DeductionResult,
    FlagRepair,
    PoolSplit,
    TransactionData,
)

logger = get_logger(__name__)

DAILY_ALLOWANCE_SOURCE = "daily_allowance"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class BalanceStore(Protocol):
    """Atomic operations the ledger and resolver consume."""

    async def get_account(self, user_id: str) -> AccountData | None: ...

    async def provision_account(self, user_id: str, is_token_user: bool = True) -> AccountData: ...

    async def deduct_tokens(
        self,
        user_id: str,
        tokens: int,
        model_id: str,
        provider: str,
        provider_cost_usd: float,
        request_id: str | None = None,
    ) -> DeductionResult: ...

    async def add_tokens(
        self,
        user_id: str,
        tokens: int,
        pool: TokenPool,
        source: str,
        external_payment_ref: str | None = None,
    ) -> CreditResult: ...

    async def refresh_daily_allowance(self, user_id: str) -> bool: ...

    async def refresh_all_due(self, limit: int = 500) -> int: ...

    async def list_recent_transactions(self, user_id: str, limit: int) -> list[TransactionData]: ...

    async def apply_flag_repair(self, user_id: str, repair: FlagRepair) -> bool: ...


# ============================================================================
# Ledger rules shared by every store implementation
# ============================================================================


def split_deduction(paid_balance: int, free_balance: int, cost: int) -> PoolSplit | None:
    """
    Split a cost across the two pools: paid balance first, then free.

    Returns None when the pools together cannot cover the cost.
    """
    if cost <= 0:
        raise ValueError(f"Cost must be positive: {cost}")
    from_paid = min(paid_balance, cost)
    from_free = cost - from_paid
    if from_free > free_balance:
        return None
    return PoolSplit(from_paid=from_paid, from_free=from_free)


def is_refresh_due(last_refresh_at: datetime | None, now: datetime, interval: timedelta) -> bool:
    """True once a full interval has elapsed since the last grant (or never granted)."""
    if last_refresh_at is None:
        return True
    return now - last_refresh_at >= interval


def qualifies_for_premium_flags(
    paid_balance: int, is_premium: bool, is_paid: bool, tier: AccountTier
) -> bool:
    return paid_balance > 0 or is_premium or is_paid or tier != AccountTier.FREE


def account_to_domain(account: Account) -> AccountData:
    """Convert ORM account to domain model."""
    return AccountData(
        user_id=account.user_id,
        free_balance=account.free_balance,
        paid_balance=account.paid_balance,
        daily_allowance=account.daily_allowance,
        last_refresh_at=account.last_refresh_at,
        tier=AccountTier(account.tier),
        is_premium_flag=account.is_premium,
        is_paid_flag=account.is_paid,
        is_token_user=account.is_token_user,
        lifetime_purchased=account.lifetime_purchased,
        lifetime_used=account.lifetime_used,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def transaction_to_domain(txn: TokenTransaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    return TransactionData(
        transaction_id=txn.id,
        user_id=txn.user_id,
        transaction_type=TransactionType(txn.transaction_type),
        tokens=txn.tokens,
        deducted_from_paid=txn.deducted_from_paid,
        deducted_from_free=txn.deducted_from_free,
        provider_cost_usd=float(txn.provider_cost_usd or 0.0),
        created_at=txn.created_at,
        model_id=txn.model_id,
        provider=txn.provider,
        pool=TokenPool(txn.pool) if txn.pool is not None else None,
        source=txn.source,
        external_payment_ref=txn.external_payment_ref,
        request_id=txn.request_id,
    )


class SqlBalanceStore:
    """
    PostgreSQL-backed balance store.

    Opens one session per operation from the given factory, so a single
    instance can be shared by long-lived components (the premium resolver).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        read_session_factory: async_sessionmaker[AsyncSession] | None = None,
        initial_free_tokens: int = 5000,
        daily_allowance: int = 1000,
        refresh_interval: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._read_session_factory = read_session_factory or session_factory
        self._initial_free_tokens = initial_free_tokens
        self._daily_allowance = daily_allowance
        self._refresh_interval = refresh_interval
        self._clock = clock

    @asynccontextmanager
    async def _session(
        self, factory: async_sessionmaker[AsyncSession] | None = None
    ) -> AsyncIterator[AsyncSession]:
        """
        Session scope mapping infrastructure failures to StoreUnavailableError.

        Covers driver errors, pool checkout timeouts and connect-time OSErrors.
        IntegrityError is handled inside the operations that expect it.
        """
        try:
            async with (factory or self._session_factory)() as session:
                yield session
        except DBAPIError as e:
            logger.error("balance_store_unavailable", error=str(e))
            raise StoreUnavailableError(str(e.orig or e)) from e
        except (SQLAlchemyError, OSError) as e:
            logger.error("balance_store_unavailable", error=str(e), error_type=type(e).__name__)
            raise StoreUnavailableError(str(e)) from e

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_account(self, user_id: str) -> AccountData | None:
        async with self._session() as session:
            account = await self._find_account(session, user_id)
            return account_to_domain(account) if account is not None else None

    async def list_recent_transactions(self, user_id: str, limit: int) -> list[TransactionData]:
        """Newest first. Display only; never used to compute balances."""
        async with self._session(self._read_session_factory) as session:
            stmt = (
                select(TokenTransaction)
                .where(TokenTransaction.user_id == user_id)
                .order_by(TokenTransaction.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [transaction_to_domain(txn) for txn in result.scalars().all()]

    # ========================================================================
    # Account lifecycle
    # ========================================================================

    async def provision_account(self, user_id: str, is_token_user: bool = True) -> AccountData:
        """
        Get or create the account seeded with the initial free grant.

        A concurrent insert for the same user loses on the primary key and
        returns the winner's row.
        """
        async with self._session() as session:
            account = await self._find_account(session, user_id)
            if account is not None:
                return account_to_domain(account)

            now = self._clock()
            new_account = Account(
                user_id=user_id,
                free_balance=self._initial_free_tokens,
                paid_balance=0,
                daily_allowance=self._daily_allowance,
                last_refresh_at=now,
                is_token_user=is_token_user,
                tier=AccountTier.FREE,
                is_premium=False,
                is_paid=False,
                lifetime_purchased=0,
                lifetime_used=0,
                created_at=now,
                updated_at=now,
            )
            session.add(new_account)

            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                account = await self._find_account(session, user_id)
                if account is None:
                    raise WriteVerificationError("Account creation failed due to race condition")
                return account_to_domain(account)

            verified = await session.get(Account, user_id)
            if verified is None:
                raise WriteVerificationError(f"Account {user_id} not found after insert")

            await session.commit()
            logger.info(
                "account_provisioned",
                user_id=user_id,
                free_balance=self._initial_free_tokens,
                is_token_user=is_token_user,
            )
            return account_to_domain(verified)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def deduct_tokens(
        self,
        user_id: str,
        tokens: int,
        model_id: str,
        provider: str,
        provider_cost_usd: float,
        request_id: str | None = None,
    ) -> DeductionResult:
        """
        Deduct tokens all-or-nothing under the account row lock.

        Insufficient balance is returned as a failed result and leaves the
        account untouched. A request_id already on record returns the original
        split without charging again.

        Raises:
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Database unreachable
        """
        async with self._session() as session:
            if request_id is not None:
                replay = await self._replay_deduction(session, user_id, request_id)
                if replay is not None:
                    return replay

            account = await self._lock_account_for_update(session, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            split = split_deduction(account.paid_balance, account.free_balance, tokens)
            if split is None:
                return DeductionResult.failed(
                    DeductionError.INSUFFICIENT_BALANCE,
                    required=tokens,
                    paid_balance=account.paid_balance,
                    free_balance=account.free_balance,
                )

            paid_after = account.paid_balance - split.from_paid
            free_after = account.free_balance - split.from_free

            txn = TokenTransaction(
                id=uuid4(),
                user_id=user_id,
                transaction_type=TransactionType.DEDUCTION,
                tokens=tokens,
                deducted_from_paid=split.from_paid,
                deducted_from_free=split.from_free,
                model_id=model_id,
                provider=provider,
                provider_cost_usd=provider_cost_usd,
                request_id=request_id,
                created_at=self._clock(),
            )
            session.add(txn)

            account.paid_balance = paid_after
            account.free_balance = free_after
            account.lifetime_used = account.lifetime_used + tokens
            if split.from_paid > 0 and paid_after == 0:
                # Paid pool drained: premium flags follow the balance back to free
                account.is_premium = False
                account.is_paid = False
                account.tier = AccountTier.FREE

            try:
                await session.flush()
            except IntegrityError:
                # Same request_id committed by a concurrent session
                await session.rollback()
                replay = await self._replay_deduction(session, user_id, request_id or "")
                if replay is None:
                    raise DataIntegrityError(f"Deduction for {user_id} violated a constraint")
                return replay

            await self._verify_transaction(session, txn)
            await self._verify_balances(session, user_id, paid_after, free_after)
            await session.commit()

            logger.info(
                "tokens_deducted",
                user_id=user_id,
                model_id=model_id,
                tokens=tokens,
                from_paid=split.from_paid,
                from_free=split.from_free,
                balance_after=paid_after + free_after,
            )
            return DeductionResult.succeeded(
                paid_balance=paid_after,
                free_balance=free_after,
                split=split,
                transaction_id=txn.id,
            )

    async def add_tokens(
        self,
        user_id: str,
        tokens: int,
        pool: TokenPool,
        source: str,
        external_payment_ref: str | None = None,
    ) -> CreditResult:
        """
        Credit tokens to one pool atomically.

        Paid credits mark the account as paid/premium. A payment reference
        already on record is not credited twice.

        Raises:
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Database unreachable
        """
        if tokens <= 0:
            raise ValueError(f"Credit amount must be positive: {tokens}")

        async with self._session() as session:
            account = await self._lock_account_for_update(session, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            if external_payment_ref is not None:
                existing = await self._find_transaction_by_payment_ref(
                    session, user_id, external_payment_ref
                )
                if existing is not None:
                    logger.warning(
                        "credit_already_applied",
                        user_id=user_id,
                        external_payment_ref=external_payment_ref,
                    )
                    return CreditResult(
                        success=True,
                        balance=account.paid_balance + account.free_balance,
                        paid_balance=account.paid_balance,
                        free_balance=account.free_balance,
                        transaction_id=existing.id,
                    )

            if pool == TokenPool.PAID:
                account.paid_balance = account.paid_balance + tokens
                account.lifetime_purchased = account.lifetime_purchased + tokens
                account.is_paid = True
                account.is_premium = True
                if account.tier == AccountTier.FREE:
                    account.tier = AccountTier.PREMIUM
                transaction_type = TransactionType.PURCHASE
            else:
                account.free_balance = account.free_balance + tokens
                transaction_type = TransactionType.GRANT

            paid_after = account.paid_balance
            free_after = account.free_balance

            txn = TokenTransaction(
                id=uuid4(),
                user_id=user_id,
                transaction_type=transaction_type,
                tokens=tokens,
                pool=pool,
                source=source,
                external_payment_ref=external_payment_ref,
                created_at=self._clock(),
            )
            session.add(txn)
            await session.flush()

            await self._verify_transaction(session, txn)
            await self._verify_balances(session, user_id, paid_after, free_after)
            await session.commit()

            logger.info(
                "tokens_credited",
                user_id=user_id,
                tokens=tokens,
                pool=pool.value,
                source=source,
                balance_after=paid_after + free_after,
            )
            return CreditResult(
                success=True,
                balance=paid_after + free_after,
                paid_balance=paid_after,
                free_balance=free_after,
                transaction_id=txn.id,
            )

    async def refresh_daily_allowance(self, user_id: str) -> bool:
        """
        Grant the daily allowance if a full interval has elapsed.

        The elapsed time is re-checked under the row lock, so two callers
        racing past the client-side check grant at most once.

        Raises:
            AccountNotFoundError: Account doesn't exist
            StoreUnavailableError: Database unreachable
        """
        async with self._session() as session:
            account = await self._lock_account_for_update(session, user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            now = self._clock()
            if not account.is_token_user or not is_refresh_due(
                account.last_refresh_at, now, self._refresh_interval
            ):
                return False

            self._grant_allowance(session, account, now)
            await session.flush()
            await session.commit()

            logger.info(
                "daily_allowance_granted",
                user_id=user_id,
                tokens=account.daily_allowance,
                free_balance=account.free_balance,
            )
            return True

    async def refresh_all_due(self, limit: int = 500) -> int:
        """
        Grant the allowance to every due token-user account, up to limit.

        Rows locked by in-flight deductions are skipped and picked up by the
        next run or by the opportunistic per-user check.
        """
        now = self._clock()
        cutoff = now - self._refresh_interval
        async with self._session() as session:
            stmt = (
                select(Account)
                .where(
                    Account.is_token_user.is_(True),
                    or_(Account.last_refresh_at.is_(None), Account.last_refresh_at <= cutoff),
                )
                .order_by(Account.last_refresh_at.asc().nulls_first())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            result = await session.execute(stmt)
            accounts = list(result.scalars().all())

            for account in accounts:
                self._grant_allowance(session, account, now)

            if accounts:
                await session.flush()
                await session.commit()

            logger.info("daily_allowance_batch_granted", accounts_refreshed=len(accounts))
            return len(accounts)

    async def apply_flag_repair(self, user_id: str, repair: FlagRepair) -> bool:
        """
        Write back denormalized premium flags.

        Re-checked under the row lock: an account whose paid balance was
        drained (and flags cleared) since the repair was planned is left alone.
        """
        if repair.is_empty:
            return False

        async with self._session() as session:
            account = await self._lock_account_for_update(session, user_id)
            if account is None:
                return False
            if not qualifies_for_premium_flags(
                account.paid_balance, account.is_premium, account.is_paid, AccountTier(account.tier)
            ):
                return False

            if repair.is_premium is not None:
                account.is_premium = repair.is_premium
            if repair.is_paid is not None:
                account.is_paid = repair.is_paid
            if repair.tier is not None:
                account.tier = repair.tier

            await session.flush()
            await session.commit()
            logger.info(
                "premium_flags_repaired",
                user_id=user_id,
                is_premium=repair.is_premium,
                is_paid=repair.is_paid,
                tier=repair.tier.value if repair.tier else None,
            )
            return True

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _grant_allowance(self, session: AsyncSession, account: Account, now: datetime) -> None:
        account.free_balance = account.free_balance + account.daily_allowance
        account.last_refresh_at = now
        session.add(
            TokenTransaction(
                user_id=account.user_id,
                transaction_type=TransactionType.DAILY_REFRESH,
                tokens=account.daily_allowance,
                pool=TokenPool.FREE,
                source=DAILY_ALLOWANCE_SOURCE,
                created_at=now,
            )
        )

    async def _replay_deduction(
        self, session: AsyncSession, user_id: str, request_id: str
    ) -> DeductionResult | None:
        existing = await self._find_transaction_by_request(session, user_id, request_id)
        if existing is None:
            return None
        account = await self._find_account(session, user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        logger.info("deduction_replayed", user_id=user_id, request_id=request_id)
        return DeductionResult.succeeded(
            paid_balance=account.paid_balance,
            free_balance=account.free_balance,
            split=PoolSplit(
                from_paid=existing.deducted_from_paid,
                from_free=existing.deducted_from_free,
            ),
            transaction_id=existing.id,
            replayed=True,
        )

    async def _find_account(self, session: AsyncSession, user_id: str) -> Account | None:
        stmt = select(Account).where(Account.user_id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(
        self, session: AsyncSession, user_id: str
    ) -> Account | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        stmt = select(Account).where(Account.user_id == user_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_transaction_by_request(
        self, session: AsyncSession, user_id: str, request_id: str
    ) -> TokenTransaction | None:
        stmt = select(TokenTransaction).where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.request_id == request_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_transaction_by_payment_ref(
        self, session: AsyncSession, user_id: str, external_payment_ref: str
    ) -> TokenTransaction | None:
        stmt = select(TokenTransaction).where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.external_payment_ref == external_payment_ref,
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _verify_transaction(self, session: AsyncSession, txn: TokenTransaction) -> None:
        verified = await session.get(TokenTransaction, txn.id)
        if verified is None:
            raise WriteVerificationError(f"Transaction {txn.id} not found after insert")

    async def _verify_balances(
        self, session: AsyncSession, user_id: str, paid_expected: int, free_expected: int
    ) -> None:
        verified = await session.get(Account, user_id)
        if verified is None:
            raise WriteVerificationError(f"Account {user_id} disappeared after update")
        if verified.paid_balance != paid_expected:
            raise DataIntegrityError(
                f"Paid balance mismatch: expected {paid_expected}, got {verified.paid_balance}"
            )
        if verified.free_balance != free_expected:
            raise DataIntegrityError(
                f"Free balance mismatch: expected {free_expected}, got {verified.free_balance}"
            )
