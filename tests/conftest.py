"""Shared test fixtures.

Each test gets a fresh SQLite file database unless UC_TEST_DATABASE_URL points
at a Postgres instance, in which case the schema is recreated per test.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usagecredits.auth.jwt import create_access_token, reset_keys
from usagecredits.config import get_settings
from usagecredits.database import close_db, get_engine, get_session_factory, init_db
from usagecredits.db import models  # noqa: F401
from usagecredits.db.base import Base
from usagecredits.main import create_app


@pytest.fixture(scope="session", autouse=True)
def _test_keys(tmp_path_factory: pytest.TempPathFactory) -> tuple[Path, Path]:
    """Generate an RSA key pair for signing test tokens."""
    keydir = tmp_path_factory.mktemp("keys")
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = keydir / "jwt_private.pem"
    public_path = keydir / "jwt_public.pem"
    private_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    os.environ["UC_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["UC_JWT_PUBLIC_KEY_PATH"] = str(public_path)
    os.environ["UC_LOG_FORMAT"] = "console"
    get_settings.cache_clear()
    reset_keys()
    return private_path, public_path


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None, None, None]:
    """Tests that monkeypatch UC_* env vars see them on the next get_settings()."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncGenerator[str, None]:
    """Initialize the engine against an empty schema. Yields the database URL."""
    url = os.environ.get("UC_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}"
    monkeypatch.setenv("UC_DATABASE_URL", url)
    get_settings.cache_clear()

    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield url

    await close_db()


@pytest_asyncio.fixture
async def session_factory(database: str) -> async_sessionmaker[AsyncSession]:
    """Factory for tests that need several independent sessions (concurrency)."""
    return get_session_factory()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for test assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest_asyncio.fixture
async def client(database: str, app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client. Redis is not initialized, so events and rate limiting are off."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_headers() -> Callable[..., dict[str, str]]:
    """Build an Authorization header for any user id and role."""

    def _make(user_id: str, role: str = "user") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}

    return _make


@pytest.fixture
def user_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    return make_headers("user-1")


@pytest.fixture
def admin_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    return make_headers("admin-1", role="admin")


class FixedRandom:
    """Random source that always returns the same value."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


@pytest.fixture
def fixed_random() -> type[FixedRandom]:
    return FixedRandom
