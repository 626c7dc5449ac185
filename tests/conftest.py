"""
Global pytest fixtures for the SCIM provisioning test suite.

Provides:
- Async SQLite engine / session maker on a per-test database file
- User and Group services over both storage backends
- Deterministic clock
- Async HTTP client bound to an app with injected services
"""
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCIM_STORAGE_BACKEND"] = "memory"
os.environ.pop("SCIM_BEARER_TOKEN", None)

from app.shared.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

BACKENDS = ("memory", "sql")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from app.shared.db.session import build_engine

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'scim_test.sqlite'}")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine):
    """Create database tables and provide a session factory."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from app.shared.db.session import init_db

    await init_db(async_engine)
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=BACKENDS)
def storage_backend(request) -> str:
    return request.param


@pytest_asyncio.fixture
async def services(storage_backend, session_maker, clock):
    """User/Group services over each storage backend in turn."""
    from app.modules.provisioning.adapters.registry import build_repositories
    from app.modules.provisioning.domain.service import build_services

    if storage_backend == "sql":
        users, groups = build_repositories("sql", session_maker=session_maker)
    else:
        users, groups = build_repositories("memory")
    return build_services(users, groups, clock=clock)


@pytest.fixture
def memory_services(clock):
    from app.modules.provisioning.adapters.registry import build_repositories
    from app.modules.provisioning.domain.service import build_services

    users, groups = build_repositories("memory")
    return build_services(users, groups, clock=clock)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app(memory_services):
    """Fresh application with in-memory services injected."""
    from app.main import create_app

    return create_app(services=memory_services)


@pytest_asyncio.fixture
async def ac(app) -> AsyncGenerator:
    """Async test client for FastAPI."""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def scim_token(monkeypatch):
    """Configure a bearer token for the duration of one test."""
    token = "configured-scim-token-0123456789abcdef"
    monkeypatch.setenv("SCIM_BEARER_TOKEN", token)
    get_settings.cache_clear()
    yield token
    monkeypatch.delenv("SCIM_BEARER_TOKEN", raising=False)
    get_settings.cache_clear()
