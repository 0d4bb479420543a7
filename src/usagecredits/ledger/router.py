"""Credit ledger API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.auth.dependencies import CurrentUser, get_current_user, require_admin
from usagecredits.config import get_settings
from usagecredits.database import get_session
from usagecredits.ledger import metering
from usagecredits.ledger.balance_store import set_credit_goal
from usagecredits.ledger.pricing import BILLABLE_ACTIONS
from usagecredits.ledger.schemas import (
    AdjustRequest,
    BalanceResponse,
    BillableActionEntry,
    CreditGoalRequest,
    DebitRequest,
    GrantRequest,
    LedgerAuditResponse,
    LedgerResultResponse,
    PricingResponse,
    TransactionEntry,
    TransactionHistoryResponse,
    UsageRequest,
    UsageResponse,
)
from usagecredits.ledger.summary import BalanceSummary, get_balance_summary
from usagecredits.ledger.transaction_log import list_transactions, verify_ledger
from usagecredits.ledger.types import LedgerResult, TransactionType
from usagecredits.redis_client import get_redis_or_none

router = APIRouter(prefix="/api/v1", tags=["Credits"])


def _balance_response(summary: BalanceSummary) -> BalanceResponse:
    return BalanceResponse(
        user_id=summary.user_id,
        balance=summary.balance,
        total_earned=summary.total_earned,
        total_spent=summary.total_spent,
        total_purchased=summary.total_purchased,
        credit_goal=summary.credit_goal,
        welcome_reward_granted=summary.welcome_reward_granted,
        next_reward_threshold=summary.next_reward_threshold,
        credits_until_next_reward=summary.credits_until_next_reward,
    )


def _result_response(result: LedgerResult) -> LedgerResultResponse:
    return LedgerResultResponse(
        balance=result.balance,
        transaction_id=result.transaction_id,
        replayed=result.replayed,
    )


# ── Authenticated endpoints ──


@router.get("/credits/balance", response_model=BalanceResponse)
async def get_my_balance(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Current balance, lifetime totals and progress to the next reward."""
    return _balance_response(await get_balance_summary(db, user.user_id))


@router.get("/credits/transactions", response_model=TransactionHistoryResponse)
async def get_my_transactions(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    transaction_type: TransactionType | None = Query(None, alias="type"),
):
    """Transaction history, newest first."""
    limit = min(limit, get_settings().transaction_page_size_max)
    entries, total = await list_transactions(
        db, user.user_id, limit=limit, offset=offset, transaction_type=transaction_type
    )
    return TransactionHistoryResponse(
        entries=[
            TransactionEntry(
                id=e.id,
                amount=e.amount,
                transaction_type=e.transaction_type,
                activity_type=e.activity_type,
                description=e.description,
                balance_after=e.balance_after,
                metadata=e.tx_metadata or {},
                created_at=e.created_at,
            )
            for e in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/credits/pricing", response_model=PricingResponse)
async def get_pricing():
    """Credit cost per unit for every billable action."""
    return PricingResponse(
        actions=[
            BillableActionEntry(
                action=a.action,
                credits_per_unit=a.credits_per_unit,
                unit=a.unit,
                description=a.description,
            )
            for a in BILLABLE_ACTIONS.values()
        ]
    )


@router.put("/credits/goal", response_model=BalanceResponse)
async def update_my_credit_goal(
    body: CreditGoalRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    await set_credit_goal(db, user.user_id, body.credit_goal)
    return _balance_response(await get_balance_summary(db, user.user_id))


@router.post("/credits/debit", response_model=LedgerResultResponse)
async def debit_my_credits(
    body: DebitRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_or_none),
):
    """Debit credits for a client-initiated action. Send an idempotency_key to make retries safe."""
    result = await metering.debit(
        db,
        user.user_id,
        body.amount,
        body.description,
        idempotency_key=body.idempotency_key,
        redis=redis,
    )
    return _result_response(result)


@router.post("/credits/usage", response_model=UsageResponse)
async def meter_my_usage(
    body: UsageRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_or_none),
):
    """Debit the catalog cost of a billable action."""
    result, cost = await metering.meter_usage(
        db,
        user.user_id,
        body.action,
        body.quantity,
        idempotency_key=body.idempotency_key,
        redis=redis,
    )
    return UsageResponse(
        balance=result.balance,
        transaction_id=result.transaction_id,
        replayed=result.replayed,
        credits_charged=cost,
    )


@router.get("/credits/audit", response_model=LedgerAuditResponse)
async def audit_my_ledger(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Replay the caller's transaction log against the balance row."""
    return await _audit(db, user.user_id)


# ── Admin endpoints ──


@router.get("/admin/credits/{user_id}", response_model=BalanceResponse)
async def admin_get_balance(
    user_id: str,
    _admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    summary = await get_balance_summary(db, user_id)
    if not summary.exists:
        raise HTTPException(status_code=404, detail="Account not found")
    return _balance_response(summary)


@router.post("/admin/credits/{user_id}/grant", response_model=LedgerResultResponse)
async def admin_grant_credits(
    user_id: str,
    body: GrantRequest,
    _admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_or_none),
):
    """Add purchased or courtesy credits (billing webhooks, support)."""
    result = await metering.credit(
        db,
        user_id,
        body.amount,
        body.transaction_type,
        body.description,
        idempotency_key=body.idempotency_key,
        activity_type=body.transaction_type,
        metadata=body.metadata,
        redis=redis,
    )
    return _result_response(result)


@router.post("/admin/credits/{user_id}/adjust", response_model=LedgerResultResponse)
async def admin_adjust_credits(
    user_id: str,
    body: AdjustRequest,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_or_none),
):
    """Signed manual correction. Removals can never take the balance below zero."""
    result = await metering.adjust(
        db,
        user_id,
        body.delta,
        body.reason,
        admin_id=admin.user_id,
        idempotency_key=body.idempotency_key,
        redis=redis,
    )
    return _result_response(result)


@router.get("/admin/credits/{user_id}/audit", response_model=LedgerAuditResponse)
async def admin_audit_ledger(
    user_id: str,
    _admin: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return await _audit(db, user_id)


async def _audit(db: AsyncSession, user_id: str) -> LedgerAuditResponse:
    audit = await verify_ledger(db, user_id)
    if audit is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return LedgerAuditResponse(
        user_id=audit.user_id,
        balance=audit.balance,
        total_earned=audit.total_earned,
        total_spent=audit.total_spent,
        replayed_sum=audit.replayed_sum,
        transaction_count=audit.transaction_count,
        consistent=audit.consistent,
    )
