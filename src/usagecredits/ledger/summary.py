"""Read-only balance summary with reward progress."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.config import get_settings
from usagecredits.ledger.balance_store import get_balance_row
from usagecredits.rewards.eligibility import next_reward_threshold


@dataclass(frozen=True, slots=True)
class BalanceSummary:
    user_id: str
    exists: bool
    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    total_purchased: int = 0
    credit_goal: int | None = None
    welcome_reward_granted: bool = False
    next_reward_threshold: int = 0
    credits_until_next_reward: int = 0


async def get_balance_summary(db: AsyncSession, user_id: str) -> BalanceSummary:
    """Current state of an account. Unknown accounts read as empty without being created."""
    step = get_settings().reward_threshold_step
    row = await get_balance_row(db, user_id)
    if row is None:
        return BalanceSummary(
            user_id=user_id,
            exists=False,
            next_reward_threshold=step,
            credits_until_next_reward=step,
        )

    next_threshold = next_reward_threshold(row.total_spent, step)
    return BalanceSummary(
        user_id=user_id,
        exists=True,
        balance=row.balance,
        total_earned=row.total_earned,
        total_spent=row.total_spent,
        total_purchased=row.total_purchased,
        credit_goal=row.credit_goal,
        welcome_reward_granted=row.welcome_reward_granted,
        next_reward_threshold=next_threshold,
        credits_until_next_reward=next_threshold - row.total_spent,
    )
