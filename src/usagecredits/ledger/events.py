"""Best-effort ledger event broadcast over Redis pub/sub.

Published only after commit. A failed publish is logged and never undoes a write.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

logger = structlog.get_logger()

LEDGER_CHANNEL = "pubsub:credits"


async def publish_ledger_event(redis: object, event: str, user_id: str, **payload: Any) -> None:
    if redis is None:
        return
    try:
        await redis.publish(  # type: ignore[attr-defined]
            LEDGER_CHANNEL,
            json.dumps({"event": event, "user_id": user_id, **payload}),
        )
    except Exception:
        logger.warning("ledger_event_publish_failed", ledger_event=event, user_id=user_id, exc_info=True)
