"""Storage failure handling for the broker.

DefaultIOHandler decides what a storage failure means for the broker:
ignore it, stop the network connectors until storage recovers, or stop the
broker. LeaseFencingIOHandler specializes it for the lease locker: lease
loss is fatal, and options that would let a broker keep serving after
losing the lease are pinned to safe values.
"""

import asyncio
import logging

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from brokerlease.app.config import IOHandlerConfig
from brokerlease.app.metrics.collector import FENCED_TOTAL, IO_ERRORS_TOTAL
from brokerlease.core.errors import LeaseIOError, LeaseLostError
from brokerlease.core.interfaces import Broker
from brokerlease.core.logging_schema import LogEvent
from brokerlease.infra.lease_locker import LeaseDatabaseLocker

logger = logging.getLogger(__name__)

_OPTIONS = ("ignore_all_errors", "ignore_sql_exceptions", "stop_start_connectors")


def is_sql_error(exc: BaseException) -> bool:
    """True if exc or anything in its cause chain is a database error."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, (SQLAlchemyError, DBAPIError)):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


class DefaultIOHandler:
    """Generic storage failure policy.

    Options:
        ignore_all_errors: Log and ignore every failure.
        ignore_sql_exceptions: Ignore database errors while the lock is
            still owned.
        stop_start_connectors: Stop the connectors, wait for storage to come
            back while the lock is owned, then restart them.
        resume_check_sleep_period: Seconds between recovery checks.

    Anything else, including lost lock ownership, stops the broker.
    """

    def __init__(self, broker: Broker | None = None, config: IOHandlerConfig | None = None) -> None:
        self._broker = broker
        self._ignore_all_errors = False
        self._ignore_sql_exceptions = True
        self._stop_start_connectors = False
        self.resume_check_sleep_period = 5.0
        self._handling = False
        self._stopping = False
        self._recovery_task: asyncio.Task | None = None
        if config is not None:
            self.apply_config(config)

    def apply_config(self, config: IOHandlerConfig) -> None:
        """Apply the options that were explicitly set on config."""
        for name in _OPTIONS:
            if name in config.model_fields_set:
                setattr(self, name, getattr(config, name))
        self.resume_check_sleep_period = config.resume_check_sleep_period

    @property
    def broker(self) -> Broker | None:
        return self._broker

    @broker.setter
    def broker(self, broker: Broker | None) -> None:
        self._broker = broker

    @property
    def ignore_all_errors(self) -> bool:
        return self._ignore_all_errors

    @ignore_all_errors.setter
    def ignore_all_errors(self, value: bool) -> None:
        self._ignore_all_errors = value

    @property
    def ignore_sql_exceptions(self) -> bool:
        return self._ignore_sql_exceptions

    @ignore_sql_exceptions.setter
    def ignore_sql_exceptions(self, value: bool) -> None:
        self._ignore_sql_exceptions = value

    @property
    def stop_start_connectors(self) -> bool:
        return self._stop_start_connectors

    @stop_start_connectors.setter
    def stop_start_connectors(self, value: bool) -> None:
        self._stop_start_connectors = value

    @property
    def recovery_task(self) -> asyncio.Task | None:
        return self._recovery_task

    async def handle(self, exc: Exception) -> None:
        """Decide and apply the consequences of a storage failure."""
        if self._handling:
            logger.info("Ignoring I/O error, already handling one: %s", exc)
            return

        self._handling = True
        try:
            await self._handle(exc)
        finally:
            self._handling = False

    async def _handle(self, exc: Exception) -> None:
        broker = self._require_broker()

        if self._ignore_all_errors or not broker.is_started:
            logger.info("Ignoring I/O error: %s", exc, extra={"event": LogEvent.IO_ERROR_IGNORED})
            IO_ERRORS_TOTAL.labels(outcome="ignored").inc()
            return

        try:
            if self._ignore_sql_exceptions and is_sql_error(exc):
                if await self.has_lock_ownership():
                    logger.info(
                        "Ignoring SQL error, lock still owned: %s",
                        exc,
                        extra={"event": LogEvent.IO_ERROR_IGNORED},
                    )
                    IO_ERRORS_TOTAL.labels(outcome="ignored").inc()
                    return

            if self._stop_start_connectors:
                await self._stop_connectors(broker, exc)
                if await self.has_lock_ownership():
                    self._start_recovery()
                    return
        except LeaseLostError as lost:
            await self.lock_lost(lost)
            return

        await self.stop_broker(exc)

    async def has_lock_ownership(self) -> bool:
        """Whether the broker still owns its persistence lock.

        Raises:
            LeaseLostError: Ownership is gone; the broker must stop.
        """
        return True

    async def lock_lost(self, exc: LeaseLostError) -> None:
        await self.stop_broker(exc)

    async def stop_broker(self, exc: Exception) -> None:
        """Stop the broker once, whatever the number of failures reported."""
        if self._stopping:
            return
        self._stopping = True

        logger.error(
            "Stopping broker due to exception: %s",
            exc,
            extra={"event": LogEvent.BROKER_STOPPED, "error": str(exc)},
        )
        IO_ERRORS_TOTAL.labels(outcome="broker_stopped").inc()
        self._cancel_recovery()
        await self._require_broker().stop(reason=exc)

    async def _stop_connectors(self, broker: Broker, exc: Exception) -> None:
        logger.warning(
            "Stopping connectors after I/O error: %s",
            exc,
            extra={"event": LogEvent.CONNECTORS_STOPPED, "error": str(exc)},
        )
        IO_ERRORS_TOTAL.labels(outcome="connectors_stopped").inc()
        await broker.stop_connectors()

    def _start_recovery(self) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.create_task(self._recover(), name="io-handler-recovery")

    async def _recover(self) -> None:
        """Wait for storage while the lock is held, then restart connectors."""
        broker = self._require_broker()
        try:
            while True:
                await asyncio.sleep(self.resume_check_sleep_period)
                if not await self.has_lock_ownership():
                    continue
                if await broker.is_storage_available():
                    break
                logger.info("Storage still unavailable, waiting %.1fs", self.resume_check_sleep_period)
        except LeaseLostError as lost:
            await self.lock_lost(lost)
            return

        logger.info("Storage recovered, restarting connectors", extra={"event": LogEvent.CONNECTORS_RESTARTED})
        await broker.start_connectors()

    def _cancel_recovery(self) -> None:
        task = self._recovery_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _require_broker(self) -> Broker:
        if self._broker is None:
            raise RuntimeError("I/O handler has no broker")
        return self._broker


class LeaseFencingIOHandler(DefaultIOHandler):
    """Failure policy for brokers whose lock is a LeaseDatabaseLocker.

    A storage failure is only survivable while keep_alive() still confirms
    the lease. Lease loss stops the broker and never waits for recovery.
    """

    PINNED_OPTIONS: dict[str, bool] = {
        "ignore_all_errors": False,
        "ignore_sql_exceptions": False,
        "stop_start_connectors": True,
    }

    def __init__(self, broker: Broker | None = None, config: IOHandlerConfig | None = None) -> None:
        self._fenced = False
        super().__init__(broker, config)
        for name, value in self.PINNED_OPTIONS.items():
            setattr(self, f"_{name}", value)

    @property
    def fenced(self) -> bool:
        return self._fenced

    @DefaultIOHandler.ignore_all_errors.setter
    def ignore_all_errors(self, value: bool) -> None:
        self._pin("ignore_all_errors", value)

    @DefaultIOHandler.ignore_sql_exceptions.setter
    def ignore_sql_exceptions(self, value: bool) -> None:
        self._pin("ignore_sql_exceptions", value)

    @DefaultIOHandler.stop_start_connectors.setter
    def stop_start_connectors(self, value: bool) -> None:
        self._pin("stop_start_connectors", value)

    def _pin(self, name: str, requested: bool) -> None:
        pinned = self.PINNED_OPTIONS[name]
        if requested != pinned:
            logger.warning(
                "An attempt to set the option '%s' was ignored. Leaving it as '%s'",
                name,
                pinned,
                extra={"event": LogEvent.CONFIG_OVERRIDDEN, "option": name, "value": pinned},
            )
        setattr(self, f"_{name}", pinned)

    async def handle(self, exc: Exception) -> None:
        if isinstance(exc, LeaseLostError):
            await self.lock_lost(exc)
            return
        await super().handle(exc)

    async def has_lock_ownership(self) -> bool:
        broker = self._require_broker()
        locker = broker.locker
        if not isinstance(locker, LeaseDatabaseLocker):
            return True

        try:
            held = await locker.keep_alive()
        except LeaseIOError as e:
            raise LeaseLostError(f"Lease lock no longer valid using: {locker!r}") from e

        if not held:
            raise LeaseLostError(f"Lease lock no longer valid using: {locker!r}")
        return True

    async def lock_lost(self, exc: LeaseLostError) -> None:
        """Fence the broker: stop it and never renew again."""
        if self._fenced:
            return
        self._fenced = True

        FENCED_TOTAL.inc()
        logger.error(
            "Lease lost, fencing broker: %s",
            exc,
            extra={"event": LogEvent.FENCED, "error": str(exc)},
        )
        await self.stop_broker(exc)
