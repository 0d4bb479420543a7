"""Transparent retry for transient storage failures during a ledger write."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from usagecredits.config import get_settings
from usagecredits.ledger.errors import LedgerWriteFailed

logger = structlog.get_logger()

T = TypeVar("T")

# Lock timeouts, dropped connections, pool exhaustion. IntegrityError is never transient here.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError, PoolTimeoutError)


async def run_ledger_write(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    op_name: str,
    user_id: str,
) -> T:
    """Run one atomic ledger unit, retrying transient failures with backoff.

    The session is rolled back before every retry so a failed attempt leaves
    no partial state. Once retries are exhausted the failure surfaces as
    LedgerWriteFailed; the caller must treat its triggering action as not metered.
    """
    settings = get_settings()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.ledger_write_retries + 1),
        wait=wait_exponential(multiplier=settings.ledger_retry_backoff_seconds, max=2),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    return await operation()
                except TRANSIENT_ERRORS as exc:
                    await db.rollback()
                    logger.warning(
                        "ledger_write_retry",
                        op=op_name,
                        user_id=user_id,
                        attempt=attempt.retry_state.attempt_number,
                        error=str(exc),
                    )
                    raise
    except TRANSIENT_ERRORS as exc:
        logger.error("ledger_write_failed", op=op_name, user_id=user_id, error=str(exc), exc_info=exc)
        msg = "Ledger write failed, please try again"
        raise LedgerWriteFailed(msg) from exc
    raise AssertionError("unreachable")  # pragma: no cover
