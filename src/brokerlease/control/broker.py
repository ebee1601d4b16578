"""Host broker service guarded by the lease locker."""

import asyncio
import logging
from collections.abc import Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from brokerlease.app.config import IOHandlerConfig, LeaseConfig
from brokerlease.app.logging import set_holder_id
from brokerlease.control.io_handler import DefaultIOHandler, LeaseFencingIOHandler
from brokerlease.control.keeper import LeaseKeeper
from brokerlease.core.domain import LeaseState
from brokerlease.core.errors import LeaseIOError
from brokerlease.core.interfaces import Broker, Connector, Locker
from brokerlease.core.logging_schema import LogEvent
from brokerlease.infra.database import acquire_connection
from brokerlease.infra.lease_locker import LeaseDatabaseLocker

logger = logging.getLogger(__name__)


class BrokerService(Broker):
    """Broker replica that serves only while it holds the lease.

    Lifecycle:
        start(): bootstrap the lease table, wait for the lease, start the
            connectors, then renew in the background.
        stop(): stop renewing and the connectors. A clean stop releases the
            lease so a peer can take over without waiting for expiry; a stop
            caused by a failure leaves the row alone.
    """

    def __init__(
        self,
        name: str,
        engine: AsyncEngine,
        *,
        lease_config: LeaseConfig | None = None,
        io_handler_config: IOHandlerConfig | None = None,
        connectors: Sequence[Connector] = (),
        locker: Locker | None = None,
        io_handler: DefaultIOHandler | None = None,
    ) -> None:
        self._name = name
        self._engine = engine
        self._lease_config = lease_config or LeaseConfig()
        self._connectors = list(connectors)

        self._locker = locker or LeaseDatabaseLocker(engine, self._lease_config)
        if isinstance(self._locker, LeaseDatabaseLocker):
            self._locker.broker = self

        self._io_handler = io_handler or LeaseFencingIOHandler(config=io_handler_config)
        self._io_handler.broker = self

        self._keeper = LeaseKeeper(
            self._locker,
            self._io_handler.lock_lost,
            keep_alive_interval=self._lease_config.keep_alive_period_millis / 1000,
            acquire_interval=self._lease_config.acquisition_sleep_interval_millis / 1000,
            fail_if_locked=self._lease_config.fail_if_locked,
        )
        self._keeper_task: asyncio.Task | None = None
        self._started = False
        self._stopping = False
        self._stopped = asyncio.Event()
        self._stop_reason: Exception | None = None

    @property
    def broker_name(self) -> str:
        return self._name

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def locker(self) -> Locker:
        return self._locker

    @property
    def io_handler(self) -> DefaultIOHandler:
        return self._io_handler

    @property
    def keeper(self) -> LeaseKeeper:
        return self._keeper

    @property
    def stop_reason(self) -> Exception | None:
        return self._stop_reason

    async def start(self) -> None:
        """Become master and start serving.

        Returns once the lease is held and the connectors are started, or
        when stop() interrupted the wait.

        Raises:
            LeaseHeldError: fail_if_locked is set and another broker is master.
            SchemaBootstrapError: The lease table could not be created.
        """
        set_holder_id(self._locker.holder_id)
        await self._locker.configure()

        await self._keeper.acquire()
        if self._keeper.state is not LeaseState.HOLDING or self._stopping:
            logger.info("Broker %s stopped before acquiring the lease", self._name)
            return

        await self.start_connectors()
        self._started = True
        self._keeper_task = asyncio.create_task(self._keeper.run(), name=f"lease-keeper-{self._name}")
        logger.info(
            "Broker %s started as master",
            self._name,
            extra={"event": LogEvent.BROKER_STARTED, "connectors": len(self._connectors)},
        )

    async def stop(self, reason: Exception | None = None) -> None:
        """Stop the broker; later calls are no-ops."""
        if self._stopping:
            return
        self._stopping = True
        self._stop_reason = reason

        self._keeper.stop()
        await self.stop_connectors()
        await self._cancel_keeper()

        if reason is None and self._locker.is_holder:
            try:
                await self._locker.release()
            except LeaseIOError as e:
                logger.warning("Could not release lease on shutdown: %s", e)

        self._started = False
        self._stopped.set()
        if reason is None:
            logger.info("Broker %s stopped", self._name, extra={"event": LogEvent.BROKER_STOPPED})
        else:
            logger.warning(
                "Broker %s stopped: %s",
                self._name,
                reason,
                extra={"event": LogEvent.BROKER_STOPPED, "error": str(reason)},
            )

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _cancel_keeper(self) -> None:
        task = self._keeper_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def handle_io_error(self, exc: Exception) -> None:
        await self._io_handler.handle(exc)

    async def stop_connectors(self) -> None:
        for connector in self._connectors:
            try:
                await connector.stop()
            except Exception as e:
                logger.error("Failed to stop connector %s: %s", connector.name, e)

    async def start_connectors(self) -> None:
        for connector in self._connectors:
            try:
                await connector.start()
            except Exception as e:
                logger.error("Failed to start connector %s: %s", connector.name, e)

    async def is_storage_available(self) -> bool:
        try:
            async with acquire_connection(self._engine) as conn:
                async with asyncio.timeout(self._lease_config.query_timeout):
                    await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.debug("Storage still unavailable: %s", e)
            return False
