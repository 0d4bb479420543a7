"""Global error handler: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from usagecredits.ledger.errors import (
    AccountNotFound,
    InsufficientCredits,
    InvalidAmount,
    LedgerError,
    LedgerWriteFailed,
    UnknownBillableAction,
    UnknownTransactionType,
)

logger = structlog.get_logger()

_LEDGER_STATUS: dict[type[LedgerError], int] = {
    InsufficientCredits: 402,
    InvalidAmount: 422,
    UnknownTransactionType: 422,
    UnknownBillableAction: 400,
    LedgerWriteFailed: 503,
    AccountNotFound: 404,
}


def ledger_error_response(exc: LedgerError) -> JSONResponse:
    """Map a ledger error to its HTTP status and body."""
    status_code = next((code for cls, code in _LEDGER_STATUS.items() if isinstance(exc, cls)), 500)
    content: dict[str, object] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, InsufficientCredits):
        content["balance"] = exc.balance
        content["required"] = exc.required
    elif isinstance(exc, LedgerWriteFailed):
        content["detail"] = "Something went wrong, please try again. You have not been charged."
    return JSONResponse(status_code=status_code, content=content)


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(_request: Request, exc: LedgerError) -> JSONResponse:
        return ledger_error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
