"""Shared fixtures for backend tests."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


# ── Database ────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite with every table; WAL so concurrent claimers work."""
    from jobworker.db.engine import install_sqlite_pragmas
    from jobworker.db.models import Base

    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", echo=False, future=True)
    install_sqlite_pragmas(eng)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    await eng.dispose()


@pytest.fixture
def event_bus():
    from jobworker.events import LocalEventBus

    return LocalEventBus()


@pytest.fixture
def store(session_factory, event_bus):
    """Store that publishes inserts / RETRY transitions to ``event_bus``."""
    from jobworker.store import SqlJobStore

    return SqlJobStore(session_factory, dialect="sqlite", event_bus=event_bus)


@pytest.fixture
def silent_store(session_factory):
    """Store over the same database that publishes nothing."""
    from jobworker.store import SqlJobStore

    return SqlJobStore(session_factory, dialect="sqlite")


@pytest.fixture(autouse=True)
def _reset_metrics():
    from jobworker.utils.metrics import metrics

    metrics.reset()
    yield
    metrics.reset()


# ── Helpers ─────────────────────────────────────────────────────


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll an async or sync *predicate* until truthy; fail on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return wait_for
