"""Pytest fixtures for driver payroll tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from driver_payroll.cache import TTLCache
from driver_payroll.collaborators import Collaborators, sql_collaborators
from driver_payroll.config import Settings
from driver_payroll.database import create_schema, get_engine, make_session_factory
from driver_payroll.tenancy import TenantContext

# Fixed "now" for build numbering and posting timestamps
FIXED_NOW = datetime(2024, 1, 20, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    """Small batches so multi-driver tests exercise the worker pool."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        log_level="DEBUG",
        eligibility_concurrency=2,
        eligibility_batch_size=2,
        collaborator_timeout_seconds=5.0,
        driver_cache_ttl_seconds=60.0,
        driver_cache_maxsize=128,
        pay_run_number_prefix="PR",
        pay_run_number_width=3,
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def driver_cache() -> TTLCache:
    return TTLCache(maxsize=128, ttl_seconds=60)


@pytest.fixture
def collaborators(session: AsyncSession, driver_cache: TTLCache) -> Collaborators:
    return sql_collaborators(session, driver_cache)


@pytest.fixture
def tenant() -> TenantContext:
    """An organization with an acting user."""
    return TenantContext(organization_id=uuid4(), actor_id=uuid4())


@pytest.fixture
def other_tenant() -> TenantContext:
    return TenantContext(organization_id=uuid4(), actor_id=uuid4())
