"""initial token ledger schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the two ledger tables:
- accounts: one row per user with free/paid token pools and tier flags
- token_transactions: append-only audit log of deductions, credits and refreshes
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create ledger tables."""

    # ========================================================================
    # accounts
    # ========================================================================
    op.create_table(
        "accounts",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("free_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("daily_allowance", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("last_refresh_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_token_user", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("lifetime_purchased", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("free_balance >= 0", name="ck_free_balance_non_negative"),
        sa.CheckConstraint("paid_balance >= 0", name="ck_paid_balance_non_negative"),
        sa.CheckConstraint("daily_allowance > 0", name="ck_daily_allowance_positive"),
        sa.CheckConstraint("lifetime_purchased >= 0", name="ck_lifetime_purchased_non_negative"),
        sa.CheckConstraint("lifetime_used >= 0", name="ck_lifetime_used_non_negative"),
        sa.CheckConstraint(
            "tier IN ('free', 'premium', 'ultra-premium')", name="ck_account_tier"
        ),
    )
    op.create_index(
        "idx_accounts_refresh_due",
        "accounts",
        ["last_refresh_at"],
        postgresql_where=sa.text("is_token_user IS true"),
    )
    op.create_index("idx_accounts_tier", "accounts", ["tier"])

    # ========================================================================
    # token_transactions
    # ========================================================================
    op.create_table(
        "token_transactions",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("tokens", sa.BigInteger(), nullable=False),
        sa.Column("deducted_from_paid", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("deducted_from_free", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("pool", sa.String(10), nullable=True),
        sa.Column("model_id", sa.String(255), nullable=True),
        sa.Column("provider", sa.String(100), nullable=True),
        sa.Column(
            "provider_cost_usd", sa.Numeric(12, 6), nullable=False, server_default="0"
        ),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("source", sa.String(255), nullable=True),
        sa.Column("external_payment_ref", sa.String(255), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("tokens > 0", name="ck_transaction_tokens_positive"),
        sa.CheckConstraint(
            "deducted_from_paid >= 0 AND deducted_from_free >= 0",
            name="ck_transaction_split_non_negative",
        ),
        sa.CheckConstraint(
            "transaction_type IN ('deduction', 'purchase', 'grant', 'daily_refresh')",
            name="ck_transaction_type",
        ),
        sa.UniqueConstraint("user_id", "request_id", name="uq_transaction_request"),
    )
    op.create_index("ix_token_transactions_user_id", "token_transactions", ["user_id"])
    op.create_index(
        "idx_token_transactions_user_created", "token_transactions", ["user_id", "created_at"]
    )
    op.create_index(
        "idx_token_transactions_payment_ref",
        "token_transactions",
        ["external_payment_ref"],
        postgresql_where=sa.text("external_payment_ref IS NOT NULL"),
    )


def downgrade() -> None:
    """Drop ledger tables."""
    op.drop_index("idx_token_transactions_payment_ref", table_name="token_transactions")
    op.drop_index("idx_token_transactions_user_created", table_name="token_transactions")
    op.drop_index("ix_token_transactions_user_id", table_name="token_transactions")
    op.drop_table("token_transactions")

    op.drop_index("idx_accounts_tier", table_name="accounts")
    op.drop_index("idx_accounts_refresh_due", table_name="accounts")
    op.drop_table("accounts")
