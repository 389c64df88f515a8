"""Pytest configuration and fixtures for partner portal tests.

Each test gets its own file-backed SQLite database (aiosqlite), so tests
never share rows and concurrent sessions behave like separate
connections.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from partner_portal.database import Base, build_engine, build_session_factory
from partner_portal.deps import get_onboarding_service
from partner_portal.main import app
from partner_portal.models import Tenant  # noqa: F401
from partner_portal.onboarding.blobs import LocalBlobStore
from partner_portal.onboarding.sequencer import SequencerTimings
from partner_portal.onboarding.service import OnboardingService


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh database with every table."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for inspecting rows written by the code under test."""
    async with session_factory() as session:
        yield session


# ── Service Fixtures ─────────────────────────────────────────────

@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def service(session_factory, blob_store) -> OnboardingService:
    """Onboarding service with zero sequencer delays."""
    return OnboardingService(
        session_factory,
        blob_store=blob_store,
        sequencer_timings=SequencerTimings(0, 0, 0),
    )


@pytest_asyncio.fixture
async def tenant(service: OnboardingService) -> Tenant:
    return await service.provision_tenant("Harbour Hotel")


@pytest_asyncio.fixture
async def client(service: OnboardingService) -> AsyncGenerator[AsyncClient, None]:
    """Create test client wired to the per-test service."""
    app.dependency_overrides[get_onboarding_service] = lambda: service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
