"""Credit ledger tables.

Creates credit_balances, credit_transactions and reward_milestones.

Revision ID: 001_credit_ledger
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_credit_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # --- Balances ---
    op.create_table(
        "credit_balances",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_purchased", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("credit_goal", sa.Integer(), nullable=True),
        sa.Column("welcome_reward_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
        sa.CheckConstraint("balance = total_earned - total_spent", name="ck_credit_balances_consistent"),
    )

    # --- Transactions ---
    op.create_table(
        "credit_transactions",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(128),
            sa.ForeignKey("credit_balances.user_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("activity_type", sa.String(64), nullable=True),
        sa.Column("description", sa.String(256), nullable=True),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("metadata", _JSON, nullable=False),
        sa.Column("idempotency_key", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_credit_transactions_user_idempotency"),
    )
    op.create_index("idx_credit_transactions_user_id", "credit_transactions", ["user_id", "id"])

    # --- Reward milestones ---
    op.create_table(
        "reward_milestones",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(128),
            sa.ForeignKey("credit_balances.user_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("threshold_value", sa.BigInteger(), nullable=False),
        sa.Column("pool", sa.String(16), nullable=False),
        sa.Column("credits_won", sa.Integer(), nullable=False),
        sa.Column("prize_label", sa.String(64), nullable=True),
        sa.Column("transaction_id", _BIGINT_PK, sa.ForeignKey("credit_transactions.id"), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "threshold_value", name="uq_reward_milestones_user_threshold"),
    )


def downgrade() -> None:
    op.drop_table("reward_milestones")
    op.drop_index("idx_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_balances")
