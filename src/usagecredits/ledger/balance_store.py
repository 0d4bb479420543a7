"""Per-account balance row: creation and guarded in-place updates.

Every mutation is a single conditional UPDATE scoped by primary key, so the
check and the write cannot be separated by a concurrent writer. The caller
owns the surrounding transaction and commits it together with the matching
transaction-log row.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.config import get_settings
from usagecredits.db.models import CreditBalance
from usagecredits.ledger.errors import AccountNotFound
from usagecredits.ledger.transaction_log import append_transaction
from usagecredits.ledger.types import TransactionType

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def get_balance_row(
    db: AsyncSession,
    user_id: str,
    *,
    for_update: bool = False,
) -> CreditBalance | None:
    """Fetch the balance row, always refreshed from the database.

    ``for_update`` takes a row lock where the backend supports it (Postgres),
    serializing concurrent readers of the same account until commit.
    """
    stmt = select(CreditBalance).where(CreditBalance.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def require_balance_row(db: AsyncSession, user_id: str) -> CreditBalance:
    row = await get_balance_row(db, user_id)
    if row is None:
        raise AccountNotFound(user_id)
    return row


async def get_or_create_balance(db: AsyncSession, user_id: str) -> CreditBalance:
    """Return the account's balance row, creating it on first use.

    New accounts are seeded with ``initial_grant_credits`` as an adjustment
    transaction in the same commit. Two concurrent first requests race on
    the primary key; the loser rolls back and reads the winner's row.
    """
    existing = await get_balance_row(db, user_id)
    if existing is not None:
        return existing

    initial = get_settings().initial_grant_credits
    now = utcnow()
    row = CreditBalance(
        user_id=user_id,
        balance=initial,
        total_earned=initial,
        total_spent=0,
        total_purchased=0,
        welcome_reward_granted=False,
        version=0,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    try:
        await db.flush()
        if initial > 0:
            await append_transaction(
                db,
                user_id=user_id,
                amount=initial,
                transaction_type=TransactionType.ADJUSTMENT,
                balance_after=initial,
                description="Starting credits",
                activity_type="account_created",
            )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_balance_row(db, user_id)
        if existing is None:
            raise
        return existing

    logger.info("ledger_account_created", user_id=user_id, initial_credits=initial)
    return row


async def apply_debit(db: AsyncSession, user_id: str, amount: int) -> bool:
    """Decrement balance by ``amount`` only if it stays non-negative.

    Returns False (and writes nothing) when funds are insufficient.
    """
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id, CreditBalance.balance >= amount)
        .values(
            balance=CreditBalance.balance - amount,
            total_spent=CreditBalance.total_spent + amount,
            version=CreditBalance.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def apply_credit(db: AsyncSession, user_id: str, amount: int, *, purchased: bool = False) -> bool:
    """Increment balance and total_earned. ``purchased`` also bumps total_purchased."""
    values = {
        "balance": CreditBalance.balance + amount,
        "total_earned": CreditBalance.total_earned + amount,
        "version": CreditBalance.version + 1,
        "updated_at": utcnow(),
    }
    if purchased:
        values["total_purchased"] = CreditBalance.total_purchased + amount
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_welcome_reward(db: AsyncSession, user_id: str) -> bool:
    """Flip welcome_reward_granted false -> true. Only one caller can ever win."""
    result = await db.execute(
        update(CreditBalance)
        .where(
            CreditBalance.user_id == user_id,
            CreditBalance.welcome_reward_granted.is_(False),
        )
        .values(
            welcome_reward_granted=True,
            version=CreditBalance.version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_credit_goal(db: AsyncSession, user_id: str, goal: int | None) -> CreditBalance:
    """Set or clear the user's savings goal (display only, no ledger effect)."""
    await get_or_create_balance(db, user_id)
    await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .values(credit_goal=goal, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await require_balance_row(db, user_id)
