"""Value types shared by the ledger services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    DEBIT = "debit"
    REWARD = "reward"
    ADJUSTMENT = "adjustment"


CREDIT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.REWARD, TransactionType.ADJUSTMENT})


@dataclass(frozen=True, slots=True)
class LedgerResult:
    """Outcome of a committed debit or credit.

    ``replayed`` is True when an idempotency key matched an earlier
    transaction and its original result was returned instead.
    """

    balance: int
    transaction_id: int
    replayed: bool = False
