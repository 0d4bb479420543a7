"""ORM models for the credit ledger.

Three tables:
  credit_balances      one row per account, current state + optimistic version
  credit_transactions  append-only signed movements, ordered by id
  reward_milestones    one row per (user_id, threshold_value) already rewarded
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from usagecredits.db.base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
_BigIntPK = BigInteger().with_variant(Integer, "sqlite")
_JSONType = JSON().with_variant(JSONB, "postgresql")


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------


class CreditBalance(Base):
    """Current ledger state per account. Created on first initialization, never deleted."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
        CheckConstraint("balance = total_earned - total_spent", name="ck_credit_balances_consistent"),
    )

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    total_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    credit_goal: Mapped[int | None] = mapped_column(Integer, nullable=True)
    welcome_reward_granted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class CreditTransaction(Base):
    """Immutable credit movement. Positive amount = credit, negative = debit."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_transactions_user_idempotency"),
        Index("idx_credit_transactions_user_id", "user_id", "id"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("credit_balances.user_id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", _JSONType, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Reward milestones
# ---------------------------------------------------------------------------


class RewardMilestone(Base):
    """Spend threshold that already produced a reward. The unique key is the exactly-once guard.

    The welcome reward is recorded with pool='welcome'; its threshold_value is the
    threshold it consumed, or 0 when the user had not crossed one yet.
    """

    __tablename__ = "reward_milestones"
    __table_args__ = (
        UniqueConstraint("user_id", "threshold_value", name="uq_reward_milestones_user_threshold"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("credit_balances.user_id", ondelete="RESTRICT"), nullable=False
    )
    threshold_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pool: Mapped[str] = mapped_column(String(16), nullable=False)
    credits_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(
        _BigIntPK, ForeignKey("credit_transactions.id"), nullable=True
    )
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
