from __future__ import annotations

import os

# Module-level engines are built at import time; point them at SQLite before any fabricsec import.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./fabricsec_test.db")

from pathlib import Path
from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fabricsec.domain.models import Base
from fabricsec.services.audit import AuditChain
from fabricsec.services.authz.catalog import seed_default_roles
from fabricsec.services.telemetry import reset_telemetry


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    # One file database per test keeps chains and assignments isolated.
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fabricsec.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def chain(session_factory: async_sessionmaker[AsyncSession]) -> AuditChain:
    # Small pages so verification exercises the keyset pagination path.
    return AuditChain(session_factory=session_factory, page_size=7)


@pytest.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        await seed_default_roles(session)


@pytest.fixture(autouse=True)
def reset_counters() -> None:
    # Telemetry is process-global; start every test from zero.
    reset_telemetry()
