"""Pydantic request/response models for credit endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# --- Requests ---


class DebitRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str | None = Field(default=None, max_length=256)
    idempotency_key: str | None = Field(default=None, max_length=256)


class UsageRequest(BaseModel):
    action: str
    quantity: float = Field(gt=0)
    idempotency_key: str | None = Field(default=None, max_length=256)


class GrantRequest(BaseModel):
    amount: int = Field(gt=0)
    transaction_type: Literal["purchase", "adjustment"] = "purchase"
    description: str | None = Field(default=None, max_length=256)
    idempotency_key: str | None = Field(default=None, max_length=256)
    metadata: dict[str, Any] = {}


class AdjustRequest(BaseModel):
    delta: int
    reason: str = Field(min_length=1, max_length=256)
    idempotency_key: str | None = Field(default=None, max_length=256)


class CreditGoalRequest(BaseModel):
    credit_goal: int | None = Field(default=None, ge=0)


# --- Responses ---


class LedgerResultResponse(BaseModel):
    balance: int
    transaction_id: int
    replayed: bool = False


class UsageResponse(LedgerResultResponse):
    credits_charged: int


class BalanceResponse(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    total_purchased: int
    credit_goal: int | None = None
    welcome_reward_granted: bool
    next_reward_threshold: int
    credits_until_next_reward: int


class TransactionEntry(BaseModel):
    id: int
    amount: int
    transaction_type: str
    activity_type: str | None = None
    description: str | None = None
    balance_after: int
    metadata: dict[str, Any] = {}
    created_at: datetime


class TransactionHistoryResponse(BaseModel):
    entries: list[TransactionEntry]
    total: int
    limit: int
    offset: int


class BillableActionEntry(BaseModel):
    action: str
    credits_per_unit: int
    unit: str
    description: str


class PricingResponse(BaseModel):
    actions: list[BillableActionEntry]


class LedgerAuditResponse(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    replayed_sum: int
    transaction_count: int
    consistent: bool
