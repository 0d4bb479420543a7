"""Reward eligibility: which spend threshold (if any) a user has newly reached.

Thresholds are multiples of a fixed step T (T, 2T, 3T, ...). The modulo
arithmetic only proposes a candidate threshold; whether it was already
rewarded is decided by the reward_milestones unique key.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.config import get_settings
from usagecredits.db.models import RewardMilestone
from usagecredits.ledger.balance_store import get_balance_row

REASON_NOT_ELIGIBLE = "not_eligible"
REASON_ALREADY_GRANTED = "already_granted"


@dataclass(frozen=True, slots=True)
class EligibilityResult:
    eligible: bool
    threshold: int | None
    is_welcome: bool
    reason: str | None = None


def candidate_threshold(total_spent: int, step: int) -> int:
    """Highest multiple of ``step`` not above ``total_spent``."""
    return (total_spent // step) * step


def next_reward_threshold(total_spent: int, step: int) -> int:
    """Next multiple of ``step`` strictly above ``total_spent``."""
    return (total_spent // step + 1) * step


def threshold_reached(total_spent: int, step: int, *, require_exact_multiple: bool = True) -> bool:
    """Whether spend currently sits on a reward threshold.

    With ``require_exact_multiple`` the user must be exactly on a multiple of
    ``step``; otherwise any spend at or past the first threshold qualifies and
    the highest crossed threshold is the candidate.
    """
    if total_spent <= 0:
        return False
    if require_exact_multiple:
        return total_spent % step == 0
    return total_spent >= step


async def has_milestone(db: AsyncSession, user_id: str, threshold: int) -> bool:
    result = await db.execute(
        select(RewardMilestone.id).where(
            RewardMilestone.user_id == user_id,
            RewardMilestone.threshold_value == threshold,
        )
    )
    return result.first() is not None


async def check_eligibility(
    db: AsyncSession,
    user_id: str,
    *,
    step: int | None = None,
    require_exact_multiple: bool | None = None,
    for_update: bool = False,
) -> EligibilityResult:
    """Decide what a reward request right now would grant.

    The first request ever is a welcome reward regardless of spend; if the
    user also sits on an unrewarded threshold, the welcome reward consumes it.
    ``for_update`` locks the balance row so the check and the grant that
    follows form one serialized unit per user.
    """
    settings = get_settings()
    step = step or settings.reward_threshold_step
    if require_exact_multiple is None:
        require_exact_multiple = settings.reward_require_exact_multiple

    row = await get_balance_row(db, user_id, for_update=for_update)
    total_spent = row.total_spent if row else 0
    reached = threshold_reached(total_spent, step, require_exact_multiple=require_exact_multiple)
    threshold = candidate_threshold(total_spent, step) if reached else None

    if row is None or not row.welcome_reward_granted:
        if threshold is not None and await has_milestone(db, user_id, threshold):
            threshold = None
        return EligibilityResult(eligible=True, threshold=threshold, is_welcome=True)

    if threshold is None:
        return EligibilityResult(eligible=False, threshold=None, is_welcome=False, reason=REASON_NOT_ELIGIBLE)
    if await has_milestone(db, user_id, threshold):
        return EligibilityResult(
            eligible=False, threshold=threshold, is_welcome=False, reason=REASON_ALREADY_GRANTED
        )
    return EligibilityResult(eligible=True, threshold=threshold, is_welcome=False)


async def list_reward_history(
    db: AsyncSession,
    user_id: str,
    *,
    limit: int = 20,
    offset: int = 0,
) -> list[RewardMilestone]:
    """Spin history, newest first."""
    result = await db.execute(
        select(RewardMilestone)
        .where(RewardMilestone.user_id == user_id)
        .order_by(RewardMilestone.granted_at.desc(), RewardMilestone.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
