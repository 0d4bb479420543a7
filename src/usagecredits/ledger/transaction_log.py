"""Append-only transaction log and replay audit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.db.models import CreditBalance, CreditTransaction
from usagecredits.ledger.types import TransactionType


async def append_transaction(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    transaction_type: TransactionType,
    balance_after: int,
    description: str | None = None,
    activity_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> CreditTransaction:
    """Insert one immutable movement and flush to assign its id.

    Raises IntegrityError if (user_id, idempotency_key) already exists.
    """
    entry = CreditTransaction(
        user_id=user_id,
        amount=amount,
        transaction_type=TransactionType(transaction_type).value,
        activity_type=activity_type,
        description=description,
        balance_after=balance_after,
        tx_metadata=metadata or {},
        idempotency_key=idempotency_key,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()
    return entry


async def find_by_idempotency_key(
    db: AsyncSession,
    user_id: str,
    idempotency_key: str,
) -> CreditTransaction | None:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    *,
    limit: int = 20,
    offset: int = 0,
    transaction_type: TransactionType | None = None,
) -> tuple[list[CreditTransaction], int]:
    """Return (page newest-first, total matching count)."""
    filters = [CreditTransaction.user_id == user_id]
    if transaction_type is not None:
        filters.append(CreditTransaction.transaction_type == TransactionType(transaction_type).value)

    total = await db.scalar(select(func.count()).select_from(CreditTransaction).where(*filters))
    result = await db.execute(
        select(CreditTransaction)
        .where(*filters)
        .order_by(CreditTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


@dataclass(frozen=True, slots=True)
class LedgerAudit:
    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    replayed_sum: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.total_earned - self.total_spent == self.replayed_sum


async def verify_ledger(db: AsyncSession, user_id: str) -> LedgerAudit | None:
    """Replay the log and compare it with the balance row. None if the account does not exist."""
    row = (
        await db.execute(
            select(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if row is None:
        return None

    summed = (
        await db.execute(
            select(
                func.coalesce(func.sum(CreditTransaction.amount), 0),
                func.count(CreditTransaction.id),
            ).where(CreditTransaction.user_id == user_id)
        )
    ).one()
    return LedgerAudit(
        user_id=user_id,
        balance=row.balance,
        total_earned=row.total_earned,
        total_spent=row.total_spent,
        replayed_sum=int(summed[0]),
        transaction_count=int(summed[1]),
    )
