"""Ledger error taxonomy.

Every error carries a stable ``code`` used in API responses. Only
``LedgerWriteFailed`` is escalated to error-level logs.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""

    code = "ledger_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InsufficientCredits(LedgerError):
    """Debit refused because it would overdraw the balance. Never retried."""

    code = "insufficient_credits"

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits: balance {balance}, required {required}")


class InvalidAmount(LedgerError):
    """Zero or negative amount passed to a debit or credit."""

    code = "invalid_amount"


class UnknownTransactionType(LedgerError):
    code = "invalid_transaction_type"


class UnknownBillableAction(LedgerError):
    code = "unknown_action"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown billable action: {action}")


class LedgerWriteFailed(LedgerError):
    """Storage failure that survived the transparent retry. Nothing was written."""

    code = "ledger_write_failed"


class AlreadyGranted(LedgerError):
    """Lost the race for a reward milestone. Treated as a successful no-op."""

    code = "already_granted"

    def __init__(self, user_id: str, threshold: int | None) -> None:
        self.user_id = user_id
        self.threshold = threshold
        super().__init__(f"Reward already granted for threshold {threshold}")


class AccountNotFound(LedgerError):
    """No balance row exists for the account."""

    code = "account_not_found"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No credit account for {user_id}")
