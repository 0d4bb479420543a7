"""Billable action catalog: credit cost per unit of product usage.

Static configuration read by the metering service, never mutated at runtime.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from usagecredits.ledger.errors import InvalidAmount, UnknownBillableAction


@dataclass(frozen=True, slots=True)
class BillableAction:
    action: str
    credits_per_unit: int
    unit: str
    description: str


BILLABLE_ACTIONS: dict[str, BillableAction] = {
    a.action: a
    for a in [
        # Studio
        BillableAction("recording_minute", 1, "minute", "Studio recording time"),
        BillableAction("streaming_minute", 1, "minute", "Live streaming time"),
        BillableAction("storage_gb", 2, "GB", "Media storage per GB"),
        # AI
        BillableAction("ai_transcription_minute", 1, "minute", "AI transcription"),
        BillableAction("ai_clip_generation", 10, "clip", "AI-generated clip"),
        BillableAction("ai_caption_render", 5, "render", "Clip render with captions"),
        BillableAction("ai_summary", 2, "summary", "AI-generated summary"),
        BillableAction("ai_voice_verification", 3, "verification", "Voice verification"),
        # Leads
        BillableAction("identity_match", 3, "match", "Email/phone identified by provider"),
        BillableAction("company_match", 1, "match", "Company identified (B2B IP match)"),
        BillableAction("export_csv", 5, "export", "Export leads to CSV"),
    ]
}


def get_billable_action(action: str) -> BillableAction:
    try:
        return BILLABLE_ACTIONS[action]
    except KeyError:
        raise UnknownBillableAction(action) from None


def compute_cost(action: str, quantity: float | int | Decimal) -> int:
    """Credits owed for ``quantity`` units of ``action``, rounded up to a whole credit.

    2.5 recording minutes at 1 credit/minute costs 3 credits.
    """
    billable = get_billable_action(action)
    qty = Decimal(str(quantity))
    if not qty.is_finite() or qty <= 0:
        msg = f"Quantity must be positive, got {quantity}"
        raise InvalidAmount(msg)
    return math.ceil(qty * billable.credits_per_unit)
