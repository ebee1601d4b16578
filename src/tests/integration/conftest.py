"""Integration test fixtures.

Tests run against a file-backed SQLite database per test, through
aiosqlite. The driver's own transaction handling is disabled and every
transaction starts with BEGIN IMMEDIATE, so concurrent writers serialize on
the database lock the way row-level locking serializes them on a server
database, and SAVEPOINT works inside the bootstrap transaction.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from brokerlease.app.config import LeaseConfig
from brokerlease.infra.lease_locker import LeaseDatabaseLocker
from brokerlease.infra.schema import SchemaBootstrapper
from brokerlease.infra.statements import LeaseStatements


def make_engine(path: Path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    # A pool reset of the isolation level re-enables them
    @event.listens_for(engine.sync_engine, "checkout")
    def _disable_on_checkout(dbapi_connection, connection_record, connection_proxy):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_config(holder_id: str, **overrides) -> LeaseConfig:
    """Lease settings without store clock reads, for deterministic expiry."""
    values = {
        "holder_id": holder_id,
        "clock_sync_enabled": False,
        "create_table_on_startup": False,
        "renewal_window_millis": 10_000,
        "keep_alive_period_millis": 5_000,
    }
    values.update(overrides)
    return LeaseConfig(**values)


@pytest_asyncio.fixture
async def test_db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Engine on an empty SQLite file, disposed after the test."""
    engine = make_engine(tmp_path / "lease.db")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def lease_engine(test_db_engine: AsyncEngine) -> AsyncEngine:
    """Engine whose lease table is already bootstrapped."""
    await SchemaBootstrapper(test_db_engine, LeaseStatements()).create()
    return test_db_engine


@pytest.fixture
def make_locker(lease_engine: AsyncEngine):
    """Factory for lockers sharing the bootstrapped store."""

    def _make(holder_id: str, **overrides) -> LeaseDatabaseLocker:
        return LeaseDatabaseLocker(lease_engine, make_config(holder_id, **overrides))

    return _make


@pytest.fixture
def locker_a(make_locker) -> LeaseDatabaseLocker:
    return make_locker("broker-a")


@pytest.fixture
def locker_b(make_locker) -> LeaseDatabaseLocker:
    return make_locker("broker-b")


@pytest.fixture
def make_config_locker():
    """Factory for lockers on an arbitrary engine."""

    def _make(engine: AsyncEngine, holder_id: str, **overrides) -> LeaseDatabaseLocker:
        return LeaseDatabaseLocker(engine, make_config(holder_id, **overrides))

    return _make
