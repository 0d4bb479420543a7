"""Reward engine: weighted prize draw applied as an exactly-once credit."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.config import get_settings
from usagecredits.db.models import RewardMilestone
from usagecredits.ledger.balance_store import claim_welcome_reward, get_or_create_balance, utcnow
from usagecredits.ledger.errors import AlreadyGranted
from usagecredits.ledger.events import publish_ledger_event
from usagecredits.ledger.metering import credit_in_transaction
from usagecredits.ledger.retry import run_ledger_write
from usagecredits.ledger.types import TransactionType
from usagecredits.rewards.eligibility import (
    REASON_ALREADY_GRANTED,
    EligibilityResult,
    check_eligibility,
)
from usagecredits.rewards.prizes import PrizePool, PrizeTable, default_prize_table

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class RewardGrant:
    credits_won: int
    new_balance: int
    prize_label: str
    pool: PrizePool
    threshold: int | None
    transaction_id: int


@dataclass(frozen=True, slots=True)
class RewardOutcome:
    granted: bool
    reason: str | None = None
    credits_won: int | None = None
    prize_label: str | None = None
    new_balance: int | None = None
    pool: PrizePool | None = None
    threshold: int | None = None
    transaction_id: int | None = None


class RewardEngine:
    """Grants milestone and welcome rewards from a prize table."""

    def __init__(
        self,
        prize_table: PrizeTable | None = None,
        *,
        threshold_step: int | None = None,
        require_exact_multiple: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.prize_table = prize_table or default_prize_table()
        self.threshold_step = threshold_step or settings.reward_threshold_step
        self.require_exact_multiple = (
            settings.reward_require_exact_multiple if require_exact_multiple is None else require_exact_multiple
        )

    async def grant_reward(
        self,
        db: AsyncSession,
        user_id: str,
        eligibility: EligibilityResult,
    ) -> RewardGrant:
        """Credit a drawn prize and record the milestone inside the caller's transaction.

        Raises AlreadyGranted (after rolling back) when a concurrent grant won
        the welcome flag or the (user_id, threshold) unique key first.
        """
        if eligibility.is_welcome and not await claim_welcome_reward(db, user_id):
            await db.rollback()
            raise AlreadyGranted(user_id, eligibility.threshold)

        pool = PrizePool.WELCOME if eligibility.is_welcome else PrizePool.STANDARD
        prize = self.prize_table.draw(pool)
        threshold_value = eligibility.threshold or 0

        entry = await credit_in_transaction(
            db,
            user_id,
            prize.credit_value,
            TransactionType.REWARD,
            f"Spin wheel: {prize.label}",
            activity_type="welcome_spin" if eligibility.is_welcome else "milestone_spin",
            metadata={"threshold": threshold_value, "pool": pool.value, "prize_label": prize.label},
        )

        # (user_id, threshold_value) is unique; the loser's credit is rolled back with it
        db.add(
            RewardMilestone(
                user_id=user_id,
                threshold_value=threshold_value,
                pool=pool.value,
                credits_won=prize.credit_value,
                prize_label=prize.label,
                transaction_id=entry.id,
                granted_at=utcnow(),
            )
        )
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise AlreadyGranted(user_id, eligibility.threshold) from None

        return RewardGrant(
            credits_won=prize.credit_value,
            new_balance=entry.balance_after,
            prize_label=prize.label,
            pool=pool,
            threshold=eligibility.threshold,
            transaction_id=entry.id,
        )

    async def request_reward(self, db: AsyncSession, user_id: str, *, redis: object = None) -> RewardOutcome:
        """Eligibility check + grant as one externally-atomic call.

        Nothing to grant is not an error: the outcome carries granted=False and
        a reason of ``not_eligible`` or ``already_granted``.
        """

        async def _attempt() -> RewardOutcome:
            await get_or_create_balance(db, user_id)
            eligibility = await check_eligibility(
                db,
                user_id,
                step=self.threshold_step,
                require_exact_multiple=self.require_exact_multiple,
                for_update=True,
            )
            if not eligibility.eligible:
                await db.rollback()
                return RewardOutcome(granted=False, reason=eligibility.reason, threshold=eligibility.threshold)

            try:
                grant = await self.grant_reward(db, user_id, eligibility)
            except AlreadyGranted as exc:
                logger.info("reward_race_lost", user_id=user_id, threshold=exc.threshold)
                return RewardOutcome(granted=False, reason=REASON_ALREADY_GRANTED, threshold=exc.threshold)

            await db.commit()
            return RewardOutcome(
                granted=True,
                credits_won=grant.credits_won,
                prize_label=grant.prize_label,
                new_balance=grant.new_balance,
                pool=grant.pool,
                threshold=grant.threshold,
                transaction_id=grant.transaction_id,
            )

        outcome = await run_ledger_write(db, _attempt, op_name="request_reward", user_id=user_id)
        if outcome.granted:
            logger.info(
                "reward_granted",
                user_id=user_id,
                pool=outcome.pool.value if outcome.pool else None,
                threshold=outcome.threshold,
                credits_won=outcome.credits_won,
                balance=outcome.new_balance,
            )
            await publish_ledger_event(
                redis,
                "reward_granted",
                user_id,
                credits_won=outcome.credits_won,
                prize_label=outcome.prize_label,
                balance=outcome.new_balance,
            )
        return outcome
