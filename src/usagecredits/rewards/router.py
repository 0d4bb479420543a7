"""Spin wheel API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.auth.dependencies import CurrentUser, get_current_user
from usagecredits.database import get_session
from usagecredits.redis_client import get_redis_or_none
from usagecredits.rewards.eligibility import check_eligibility, list_reward_history
from usagecredits.rewards.engine import RewardEngine
from usagecredits.rewards.prizes import PrizePool
from usagecredits.rewards.schemas import (
    EligibilityResponse,
    PrizeEntry,
    PrizePoolResponse,
    PrizeTableResponse,
    RewardHistoryEntry,
    RewardHistoryResponse,
    SpinResponse,
)

router = APIRouter(prefix="/api/v1/rewards", tags=["Rewards"])


def get_reward_engine() -> RewardEngine:
    """FastAPI dependency; override in tests to pin the random source."""
    return RewardEngine()


@router.get("/eligibility", response_model=EligibilityResponse)
async def get_my_eligibility(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    engine: RewardEngine = Depends(get_reward_engine),
):
    """Whether a spin right now would grant a reward. Read-only; spin to claim."""
    result = await check_eligibility(
        db,
        user.user_id,
        step=engine.threshold_step,
        require_exact_multiple=engine.require_exact_multiple,
    )
    return EligibilityResponse(
        eligible=result.eligible,
        threshold=result.threshold,
        is_welcome=result.is_welcome,
        reason=result.reason,
    )


@router.post("/spin", response_model=SpinResponse)
async def spin(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_or_none),
    engine: RewardEngine = Depends(get_reward_engine),
):
    """Request a reward. Returns granted=false with a reason when there is nothing to grant."""
    outcome = await engine.request_reward(db, user.user_id, redis=redis)
    return SpinResponse(
        granted=outcome.granted,
        reason=outcome.reason,
        credits_won=outcome.credits_won,
        prize_label=outcome.prize_label,
        new_balance=outcome.new_balance,
        pool=outcome.pool.value if outcome.pool else None,
        threshold=outcome.threshold,
    )


@router.get("/history", response_model=RewardHistoryResponse)
async def get_my_reward_history(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    rows = await list_reward_history(db, user.user_id, limit=limit, offset=offset)
    return RewardHistoryResponse(
        entries=[
            RewardHistoryEntry(
                threshold_value=r.threshold_value,
                pool=r.pool,
                credits_won=r.credits_won,
                prize_label=r.prize_label,
                granted_at=r.granted_at,
            )
            for r in rows
        ]
    )


@router.get("/prizes", response_model=PrizeTableResponse)
async def get_prize_table(engine: RewardEngine = Depends(get_reward_engine)):
    """Prize pools with each prize's odds."""
    pools = []
    for pool in PrizePool:
        entries = [e for e in engine.prize_table.pool(pool) if e.weight > 0]
        if not entries:
            continue
        total_weight = sum(e.weight for e in entries)
        low, high = engine.prize_table.value_range(pool)
        pools.append(
            PrizePoolResponse(
                pool=pool.value,
                min_credits=low,
                max_credits=high,
                prizes=[
                    PrizeEntry(
                        label=e.label,
                        credit_value=e.credit_value,
                        weight=e.weight,
                        probability=round(e.weight / total_weight, 4),
                    )
                    for e in entries
                ],
            )
        )
    return PrizeTableResponse(threshold_step=engine.threshold_step, pools=pools)
