"""Unit tests for storage failure handling and lease fencing."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from brokerlease.app.config import IOHandlerConfig
from brokerlease.control.io_handler import DefaultIOHandler, LeaseFencingIOHandler, is_sql_error
from brokerlease.core.errors import LeaseIOError, LeaseLostError


def _sql_io_error() -> LeaseIOError:
    cause = OperationalError("UPDATE broker_lease", {}, Exception("connection reset"))
    try:
        raise LeaseIOError("broker-a, failed to update lease") from cause
    except LeaseIOError as e:
        return e


class TestIsSqlError:
    def test_direct(self) -> None:
        assert is_sql_error(OperationalError("SELECT 1", {}, Exception("x")))

    def test_in_cause_chain(self) -> None:
        assert is_sql_error(_sql_io_error())

    def test_plain_error(self) -> None:
        assert not is_sql_error(LeaseIOError("disk full"))

    def test_cyclic_chain_terminates(self) -> None:
        a = ValueError("a")
        b = ValueError("b")
        a.__cause__ = b
        b.__cause__ = a
        assert not is_sql_error(a)


class TestOptionPinning:
    """Lease fencing overrides the options that would keep a fenced broker serving."""

    def test_pinned_at_construction(self) -> None:
        handler = LeaseFencingIOHandler()

        assert handler.ignore_all_errors is False
        assert handler.ignore_sql_exceptions is False
        assert handler.stop_start_connectors is True

    def test_default_config_logs_nothing(self, caplog) -> None:
        with caplog.at_level(logging.WARNING):
            LeaseFencingIOHandler(config=IOHandlerConfig())

        assert caplog.records == []

    def test_conflicting_config_warns_per_option(self, caplog) -> None:
        config = IOHandlerConfig(
            ignore_all_errors=True,
            ignore_sql_exceptions=True,
            stop_start_connectors=False,
        )

        with caplog.at_level(logging.WARNING):
            handler = LeaseFencingIOHandler(config=config)

        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert warnings == [
            "An attempt to set the option 'ignore_all_errors' was ignored. Leaving it as 'False'",
            "An attempt to set the option 'ignore_sql_exceptions' was ignored. Leaving it as 'False'",
            "An attempt to set the option 'stop_start_connectors' was ignored. Leaving it as 'True'",
        ]
        assert handler.ignore_all_errors is False
        assert handler.ignore_sql_exceptions is False
        assert handler.stop_start_connectors is True

    def test_assignment_is_ignored(self, caplog) -> None:
        handler = LeaseFencingIOHandler()

        with caplog.at_level(logging.WARNING):
            handler.stop_start_connectors = False

        assert handler.stop_start_connectors is True
        assert len(caplog.records) == 1
        assert "stop_start_connectors" in caplog.records[0].getMessage()

    def test_assigning_pinned_value_is_quiet(self, caplog) -> None:
        handler = LeaseFencingIOHandler()

        with caplog.at_level(logging.WARNING):
            handler.ignore_all_errors = False

        assert caplog.records == []

    def test_default_handler_is_configurable(self) -> None:
        handler = DefaultIOHandler(config=IOHandlerConfig(ignore_all_errors=True))
        handler.stop_start_connectors = True

        assert handler.ignore_all_errors is True
        assert handler.ignore_sql_exceptions is True
        assert handler.stop_start_connectors is True


class TestDefaultIOHandler:
    @pytest.mark.asyncio
    async def test_ignore_all_errors(self, mock_broker: MagicMock) -> None:
        handler = DefaultIOHandler(mock_broker)
        handler.ignore_all_errors = True

        await handler.handle(LeaseIOError("boom"))

        mock_broker.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_ignored_when_broker_not_started(self, mock_broker: MagicMock) -> None:
        mock_broker.is_started = False
        handler = DefaultIOHandler(mock_broker)

        await handler.handle(LeaseIOError("boom"))

        mock_broker.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_sql_error_ignored_while_lock_owned(self, mock_broker: MagicMock) -> None:
        handler = DefaultIOHandler(mock_broker)

        await handler.handle(_sql_io_error())

        mock_broker.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_error_stops_broker(self, mock_broker: MagicMock) -> None:
        handler = DefaultIOHandler(mock_broker)
        error = LeaseIOError("disk full")

        await handler.handle(error)

        mock_broker.stop.assert_awaited_once_with(reason=error)

    @pytest.mark.asyncio
    async def test_broker_stopped_once(self, mock_broker: MagicMock) -> None:
        handler = DefaultIOHandler(mock_broker)

        await handler.handle(LeaseIOError("first"))
        await handler.handle(LeaseIOError("second"))

        mock_broker.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_start_connectors_recovers(self, mock_broker: MagicMock) -> None:
        handler = DefaultIOHandler(mock_broker, IOHandlerConfig(resume_check_sleep_period=0.01))
        handler.stop_start_connectors = True

        await handler.handle(LeaseIOError("disk full"))

        mock_broker.stop_connectors.assert_awaited_once()
        assert handler.recovery_task is not None
        await asyncio.wait_for(handler.recovery_task, timeout=1)
        mock_broker.start_connectors.assert_awaited_once()
        mock_broker.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_recovery_waits_for_storage(self, mock_broker: MagicMock) -> None:
        mock_broker.is_storage_available = AsyncMock(side_effect=[False, False, True])
        handler = DefaultIOHandler(mock_broker, IOHandlerConfig(resume_check_sleep_period=0.01))
        handler.stop_start_connectors = True

        await handler.handle(LeaseIOError("disk full"))
        await asyncio.wait_for(handler.recovery_task, timeout=1)

        assert mock_broker.is_storage_available.await_count == 3
        mock_broker.start_connectors.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_requires_broker(self) -> None:
        handler = DefaultIOHandler()

        with pytest.raises(RuntimeError):
            await handler.handle(LeaseIOError("boom"))


class TestLeaseFencing:
    @pytest.mark.asyncio
    async def test_lease_lost_fences_immediately(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        handler = LeaseFencingIOHandler(mock_broker)
        error = LeaseLostError("Lease lost by broker-a")

        await handler.handle(error)

        assert handler.fenced is True
        mock_locker.keep_alive.assert_not_called()
        mock_broker.stop.assert_awaited_once_with(reason=error)

    @pytest.mark.asyncio
    async def test_fenced_exactly_once(self, mock_broker: MagicMock) -> None:
        handler = LeaseFencingIOHandler(mock_broker)

        await handler.handle(LeaseLostError())
        await handler.handle(LeaseLostError())
        await handler.lock_lost(LeaseLostError())

        mock_broker.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_keep_alive_fences(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        mock_locker.keep_alive = AsyncMock(return_value=False)
        handler = LeaseFencingIOHandler(mock_broker)

        await handler.handle(_sql_io_error())

        mock_broker.stop_connectors.assert_awaited_once()
        assert handler.fenced is True
        reason = mock_broker.stop.await_args.kwargs["reason"]
        assert isinstance(reason, LeaseLostError)
        assert "no longer valid" in reason.message
        assert handler.recovery_task is None

    @pytest.mark.asyncio
    async def test_failing_keep_alive_fences(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        """An ownership check that raises counts as lost."""
        mock_locker.keep_alive = AsyncMock(side_effect=LeaseIOError("connection refused"))
        handler = LeaseFencingIOHandler(mock_broker)

        await handler.handle(_sql_io_error())

        assert handler.fenced is True
        reason = mock_broker.stop.await_args.kwargs["reason"]
        assert isinstance(reason, LeaseLostError)
        assert isinstance(reason.__cause__, LeaseIOError)

    @pytest.mark.asyncio
    async def test_sql_error_not_ignored(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        """With the lease still confirmed, connectors stop until storage recovers."""
        handler = LeaseFencingIOHandler(mock_broker, IOHandlerConfig(resume_check_sleep_period=0.01))

        await handler.handle(_sql_io_error())

        mock_broker.stop_connectors.assert_awaited_once()
        assert handler.fenced is False
        await asyncio.wait_for(handler.recovery_task, timeout=1)
        mock_broker.start_connectors.assert_awaited_once()
        mock_broker.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_recovery_fences_on_loss(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        mock_locker.keep_alive = AsyncMock(side_effect=[True, False])
        handler = LeaseFencingIOHandler(mock_broker, IOHandlerConfig(resume_check_sleep_period=0.01))

        await handler.handle(_sql_io_error())
        await asyncio.wait_for(handler.recovery_task, timeout=1)

        assert handler.fenced is True
        mock_broker.start_connectors.assert_not_called()
        mock_broker.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reentrant_report_is_ignored(self, mock_broker: MagicMock, mock_locker: MagicMock) -> None:
        """keep_alive reporting its own failure while the handler runs does not recurse."""
        handler = LeaseFencingIOHandler(mock_broker, IOHandlerConfig(resume_check_sleep_period=10))

        async def keep_alive() -> bool:
            await handler.handle(LeaseIOError("nested"))
            return True

        mock_locker.keep_alive = AsyncMock(side_effect=keep_alive)

        await handler.handle(_sql_io_error())

        mock_broker.stop_connectors.assert_awaited_once()
        mock_broker.stop.assert_not_called()
        handler.recovery_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handler.recovery_task

    @pytest.mark.asyncio
    async def test_other_locker_keeps_ownership(self, mock_broker: MagicMock) -> None:
        mock_broker.locker = MagicMock()
        handler = LeaseFencingIOHandler(mock_broker)

        assert await handler.has_lock_ownership() is True
