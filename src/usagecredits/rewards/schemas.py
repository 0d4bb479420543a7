"""Pydantic response models for reward endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class EligibilityResponse(BaseModel):
    eligible: bool
    threshold: int | None = None
    is_welcome: bool
    reason: str | None = None


class SpinResponse(BaseModel):
    granted: bool
    reason: str | None = None
    credits_won: int | None = None
    prize_label: str | None = None
    new_balance: int | None = None
    pool: str | None = None
    threshold: int | None = None


class RewardHistoryEntry(BaseModel):
    threshold_value: int
    pool: str
    credits_won: int
    prize_label: str | None = None
    granted_at: datetime


class RewardHistoryResponse(BaseModel):
    entries: list[RewardHistoryEntry]


class PrizeEntry(BaseModel):
    label: str
    credit_value: int
    weight: int
    probability: float


class PrizePoolResponse(BaseModel):
    pool: str
    min_credits: int
    max_credits: int
    prizes: list[PrizeEntry]


class PrizeTableResponse(BaseModel):
    threshold_step: int
    pools: list[PrizePoolResponse]
