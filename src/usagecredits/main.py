"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from usagecredits.config import get_settings
from usagecredits.database import close_db, init_db
from usagecredits.health.router import router as health_router
from usagecredits.ledger.router import router as ledger_router
from usagecredits.middleware import setup_middleware
from usagecredits.redis_client import close_redis, init_redis
from usagecredits.rewards.router import router as rewards_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Usage Credits API",
        description="Prepaid usage-credit ledger and milestone reward engine",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(ledger_router)
    app.include_router(rewards_router)

    return app


app = create_app()
