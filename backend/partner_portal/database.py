"""Database engine, session factory, and declarative base.

All portal tables live on a single `Base`; tenants are rows, and every
onboarding task row carries its `tenant_id`.

Sessions are opened by the components that need them (task store, phase
controller, service) through `async_session`, so each atomic operation
owns its transaction.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from partner_portal.config import settings


def _engine_kwargs(url: str) -> dict:
    # SQLite (local runs, tests) does not take pool sizing arguments
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {"pool_size": 20, "max_overflow": 10}


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url, echo=echo, **_engine_kwargs(url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)

async_session = build_session_factory(engine)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Declarative base for every portal table."""
    pass
