"""Fixtures for unit tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from brokerlease.app.config import LeaseConfig
from brokerlease.core.interfaces import Broker
from brokerlease.infra.lease_locker import LeaseDatabaseLocker


@pytest.fixture
def lease_config() -> LeaseConfig:
    """Deterministic lease settings: no clock read, no bootstrap."""
    return LeaseConfig(
        holder_id="broker-a",
        clock_sync_enabled=False,
        create_table_on_startup=False,
        renewal_window_millis=10_000,
        keep_alive_period_millis=5_000,
    )


@pytest.fixture
def mock_locker() -> MagicMock:
    """LeaseDatabaseLocker mock that still holds the lease."""
    locker = MagicMock(spec=LeaseDatabaseLocker)
    locker.holder_id = "broker-a"
    locker.is_holder = True
    locker.keep_alive = AsyncMock(return_value=True)
    locker.release = AsyncMock(return_value=True)
    return locker


@pytest.fixture
def mock_broker(mock_locker: MagicMock) -> MagicMock:
    """Started broker mock owning mock_locker."""
    broker = MagicMock(spec=Broker)
    broker.broker_name = "broker-a"
    broker.is_started = True
    broker.locker = mock_locker
    broker.handle_io_error = AsyncMock()
    broker.stop = AsyncMock()
    broker.stop_connectors = AsyncMock()
    broker.start_connectors = AsyncMock()
    broker.is_storage_available = AsyncMock(return_value=True)
    return broker


@pytest.fixture
def mock_conn() -> MagicMock:
    """AsyncConnection mock with working transaction context managers."""
    conn = MagicMock()
    conn.info = {}
    result = MagicMock()
    result.rowcount = 1
    conn.execute = AsyncMock(return_value=result)
    conn.commit = AsyncMock()
    conn.rollback = AsyncMock()
    conn.close = AsyncMock()
    return conn


@pytest.fixture
def mock_engine(mock_conn: MagicMock) -> MagicMock:
    """AsyncEngine mock handing out mock_conn."""
    engine = MagicMock()
    engine.connect = AsyncMock(return_value=mock_conn)
    return engine
