"""Metering service: turns product usage into guarded ledger movements.

Each debit/credit is one atomic unit: the guarded balance UPDATE and the
transaction-log INSERT commit together or not at all. Transient storage
failures are retried once (see ``run_ledger_write``); business rejections
(InsufficientCredits, InvalidAmount) are never retried.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from usagecredits.db.models import CreditTransaction
from usagecredits.ledger.balance_store import (
    apply_credit,
    apply_debit,
    get_balance_row,
    get_or_create_balance,
    require_balance_row,
)
from usagecredits.ledger.errors import AccountNotFound, InsufficientCredits, InvalidAmount, UnknownTransactionType
from usagecredits.ledger.events import publish_ledger_event
from usagecredits.ledger.pricing import compute_cost, get_billable_action
from usagecredits.ledger.retry import run_ledger_write
from usagecredits.ledger.transaction_log import append_transaction, find_by_idempotency_key
from usagecredits.ledger.types import CREDIT_TYPES, LedgerResult, TransactionType

logger = structlog.get_logger()


def _require_positive(amount: int) -> None:
    # bool is an int subclass; True must not debit one credit
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        msg = f"Amount must be a positive integer, got {amount!r}"
        raise InvalidAmount(msg)


def _replay(existing: CreditTransaction, requested_amount: int) -> LedgerResult:
    if existing.amount != requested_amount:
        logger.warning(
            "ledger_idempotency_amount_mismatch",
            user_id=existing.user_id,
            idempotency_key=existing.idempotency_key,
            original_amount=existing.amount,
            requested_amount=requested_amount,
        )
    return LedgerResult(balance=existing.balance_after, transaction_id=existing.id, replayed=True)


# ---------------------------------------------------------------------------
# In-transaction primitives (caller commits)
# ---------------------------------------------------------------------------


async def debit_in_transaction(
    db: AsyncSession,
    user_id: str,
    amount: int,
    description: str | None,
    *,
    transaction_type: TransactionType = TransactionType.DEBIT,
    activity_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> CreditTransaction:
    """Guarded decrement + log row inside the caller's transaction.

    Rolls back and raises InsufficientCredits when the debit would overdraw.
    """
    if not await apply_debit(db, user_id, amount):
        row = await get_balance_row(db, user_id)
        current = row.balance if row else 0
        await db.rollback()
        raise InsufficientCredits(user_id, current, amount)

    row = await require_balance_row(db, user_id)
    return await append_transaction(
        db,
        user_id=user_id,
        amount=-amount,
        transaction_type=transaction_type,
        balance_after=row.balance,
        description=description,
        activity_type=activity_type,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


async def credit_in_transaction(
    db: AsyncSession,
    user_id: str,
    amount: int,
    transaction_type: TransactionType,
    description: str | None,
    *,
    activity_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> CreditTransaction:
    """Increment + log row inside the caller's transaction. Credits are never refused.

    The account must already exist; raises AccountNotFound otherwise.
    """
    purchased = transaction_type == TransactionType.PURCHASE
    if not await apply_credit(db, user_id, amount, purchased=purchased):
        raise AccountNotFound(user_id)

    row = await require_balance_row(db, user_id)
    return await append_transaction(
        db,
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        balance_after=row.balance,
        description=description,
        activity_type=activity_type,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def debit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    description: str | None = None,
    *,
    idempotency_key: str | None = None,
    activity_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    transaction_type: TransactionType = TransactionType.DEBIT,
    redis: object = None,
) -> LedgerResult:
    """Debit ``amount`` credits, refusing to overdraw.

    A repeated (user_id, idempotency_key) returns the original result and
    writes nothing. Raises InsufficientCredits, InvalidAmount or LedgerWriteFailed.
    """
    _require_positive(amount)

    async def _attempt() -> LedgerResult:
        await get_or_create_balance(db, user_id)
        if idempotency_key:
            existing = await find_by_idempotency_key(db, user_id, idempotency_key)
            if existing is not None:
                replayed = _replay(existing, -amount)
                await db.rollback()
                return replayed
        try:
            entry = await debit_in_transaction(
                db,
                user_id,
                amount,
                description,
                transaction_type=transaction_type,
                activity_type=activity_type,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except IntegrityError:
            # A concurrent request with the same key committed first
            await db.rollback()
            existing = await find_by_idempotency_key(db, user_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return _replay(existing, -amount)
        await db.commit()
        return LedgerResult(balance=entry.balance_after, transaction_id=entry.id)

    try:
        result = await run_ledger_write(db, _attempt, op_name="debit", user_id=user_id)
    except InsufficientCredits as exc:
        logger.info("ledger_debit_refused", user_id=user_id, balance=exc.balance, required=amount)
        raise

    if not result.replayed:
        logger.info(
            "ledger_debit",
            user_id=user_id,
            amount=amount,
            balance=result.balance,
            transaction_id=result.transaction_id,
            activity_type=activity_type,
        )
        await publish_ledger_event(
            redis, "balance_updated", user_id, balance=result.balance, transaction_id=result.transaction_id
        )
    return result


async def credit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    transaction_type: TransactionType | str,
    description: str | None = None,
    *,
    idempotency_key: str | None = None,
    activity_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    redis: object = None,
) -> LedgerResult:
    """Add ``amount`` credits. Only purchase, reward and adjustment are credit types."""
    _require_positive(amount)
    try:
        tx_type = TransactionType(transaction_type)
    except ValueError:
        msg = f"Unknown transaction type: {transaction_type}"
        raise UnknownTransactionType(msg) from None
    if tx_type not in CREDIT_TYPES:
        msg = f"'{tx_type.value}' is not a credit transaction type"
        raise UnknownTransactionType(msg)

    async def _attempt() -> LedgerResult:
        await get_or_create_balance(db, user_id)
        if idempotency_key:
            existing = await find_by_idempotency_key(db, user_id, idempotency_key)
            if existing is not None:
                replayed = _replay(existing, amount)
                await db.rollback()
                return replayed
        try:
            entry = await credit_in_transaction(
                db,
                user_id,
                amount,
                tx_type,
                description,
                activity_type=activity_type,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except IntegrityError:
            await db.rollback()
            existing = await find_by_idempotency_key(db, user_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return _replay(existing, amount)
        await db.commit()
        return LedgerResult(balance=entry.balance_after, transaction_id=entry.id)

    result = await run_ledger_write(db, _attempt, op_name="credit", user_id=user_id)
    if not result.replayed:
        logger.info(
            "ledger_credit",
            user_id=user_id,
            amount=amount,
            transaction_type=tx_type.value,
            balance=result.balance,
            transaction_id=result.transaction_id,
        )
        await publish_ledger_event(
            redis, "balance_updated", user_id, balance=result.balance, transaction_id=result.transaction_id
        )
    return result


async def meter_usage(
    db: AsyncSession,
    user_id: str,
    action: str,
    quantity: float | int,
    *,
    idempotency_key: str | None = None,
    redis: object = None,
) -> tuple[LedgerResult, int]:
    """Debit the catalog cost of ``quantity`` units of ``action``. Returns (result, credits charged)."""
    billable = get_billable_action(action)
    cost = compute_cost(action, quantity)
    result = await debit(
        db,
        user_id,
        cost,
        f"{billable.description} ({quantity} {billable.unit})",
        idempotency_key=idempotency_key,
        activity_type=action,
        metadata={"action": action, "quantity": str(quantity), "credits_per_unit": billable.credits_per_unit},
        redis=redis,
    )
    return result, cost


async def adjust(
    db: AsyncSession,
    user_id: str,
    delta: int,
    reason: str,
    *,
    admin_id: str,
    idempotency_key: str | None = None,
    redis: object = None,
) -> LedgerResult:
    """Admin correction. Positive deltas credit; negative deltas debit and may not overdraw."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        msg = f"Adjustment must be a non-zero integer, got {delta!r}"
        raise InvalidAmount(msg)

    metadata = {"admin_id": admin_id, "reason": reason}
    logger.info("ledger_admin_adjust", user_id=user_id, delta=delta, admin_id=admin_id)
    if delta > 0:
        return await credit(
            db,
            user_id,
            delta,
            TransactionType.ADJUSTMENT,
            reason,
            idempotency_key=idempotency_key,
            activity_type="admin_adjustment",
            metadata=metadata,
            redis=redis,
        )
    return await debit(
        db,
        user_id,
        -delta,
        reason,
        idempotency_key=idempotency_key,
        activity_type="admin_adjustment",
        metadata=metadata,
        transaction_type=TransactionType.ADJUSTMENT,
        redis=redis,
    )
