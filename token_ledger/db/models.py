"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from token_ledger.models.api import AccountTier, TokenPool, TransactionType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class Account(Base):
    """
    ORM model for accounts table.

    One row per user holding both token pools and the denormalized tier flags.
    """

    __tablename__ = "accounts"

    # Primary Key - opaque user id from the identity provider
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balances
    free_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Daily allowance
    daily_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    last_refresh_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_token_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Tier flags (denormalized from paid_balance / purchase history)
    tier: Mapped[AccountTier] = mapped_column(
        SQLEnum(
            AccountTier,
            name="account_tier",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AccountTier.FREE,
    )
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Lifetime counters
    lifetime_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("free_balance >= 0", name="ck_free_balance_non_negative"),
        CheckConstraint("paid_balance >= 0", name="ck_paid_balance_non_negative"),
        CheckConstraint("daily_allowance > 0", name="ck_daily_allowance_positive"),
        CheckConstraint("lifetime_purchased >= 0", name="ck_lifetime_purchased_non_negative"),
        CheckConstraint("lifetime_used >= 0", name="ck_lifetime_used_non_negative"),
        Index(
            "idx_accounts_refresh_due",
            "last_refresh_at",
            postgresql_where=(is_token_user.is_(True)),
        ),
        Index("idx_accounts_tier", "tier"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(user_id={self.user_id}, free={self.free_balance}, "
            f"paid={self.paid_balance}, tier={self.tier})>"
        )


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Append-only audit ledger of deductions, credits and daily refreshes.
    Never read back to compute balances.
    """

    __tablename__ = "token_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="token_transaction_type",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Amount and pool split
    tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deducted_from_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    deducted_from_free: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pool: Mapped[TokenPool | None] = mapped_column(
        SQLEnum(
            TokenPool,
            name="token_pool",
            native_enum=False,
            length=10,
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    # Request context (deductions)
    model_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_cost_usd: Mapped[float] = mapped_column(
        Numeric(12, 6, asdecimal=False), nullable=False, default=0.0
    )
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Credit context
    source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_transaction_tokens_positive"),
        CheckConstraint(
            "deducted_from_paid >= 0 AND deducted_from_free >= 0",
            name="ck_transaction_split_non_negative",
        ),
        UniqueConstraint("user_id", "request_id", name="uq_transaction_request"),
        Index("idx_token_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_token_transactions_payment_ref",
            "external_payment_ref",
            postgresql_where=(external_payment_ref.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenTransaction(id={self.id}, user_id={self.user_id}, "
            f"type={self.transaction_type}, tokens={self.tokens})>"
        )
