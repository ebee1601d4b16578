"""Lease locker: mastership through a single shared database row."""

import asyncio
import logging

from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine

from brokerlease.app.config import LeaseConfig
from brokerlease.app.metrics.collector import (
    LEASE_IS_HOLDER,
    LEASE_KEEPALIVE_DURATION,
    LEASE_KEEPALIVE_TOTAL,
)
from brokerlease.core.domain import LeaseRow
from brokerlease.core.errors import LeaseConfigError, LeaseIOError
from brokerlease.core.interfaces import Broker, Locker
from brokerlease.core.logging_schema import ErrorClass, LogEvent
from brokerlease.infra.clock import ClockSync, current_millis
from brokerlease.infra.database import acquire_connection
from brokerlease.infra.schema import SchemaBootstrapper
from brokerlease.infra.statements import LeaseStatements

logger = logging.getLogger(__name__)


def classify_error(exc: Exception) -> ErrorClass:
    if isinstance(exc, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, ProgrammingError):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


class LeaseDatabaseLocker(Locker):
    """Exclusive lease on a shared database.

    Prevents multiple brokers from running against the same logical store.
    The lease row is the lock: keep_alive() claims it for this holder when
    the holder already owns it or the recorded lease has expired, in one
    atomic conditional UPDATE. The store serializes concurrent attempts,
    so at most one holder wins a free row.

    Callers must not overlap keep_alive() calls from the same instance;
    the internal lock serializes them anyway.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        config: LeaseConfig | None = None,
        *,
        broker: Broker | None = None,
        statements: LeaseStatements | None = None,
    ) -> None:
        """Initialize the locker.

        Args:
            engine: Async engine of the shared store (connection provider).
            config: Lease settings. Defaults to LeaseConfig().
            broker: Host broker; supplies the default holder id and receives
                storage failures.
            statements: Statement provider. Built from config.table_name
                when omitted.
        """
        self._engine = engine
        self._config = config or LeaseConfig()
        self._broker = broker
        self._statements = statements or LeaseStatements(
            self._config.table_name, schema=self._config.table_schema
        )
        self._clock = ClockSync(
            self._statements,
            enabled=self._config.clock_sync_enabled,
            query_timeout=self._config.query_timeout,
            max_allowable_skew_millis=self._config.max_allowable_clock_skew_millis,
        )
        self._holder_id = self._config.holder_id
        self._is_holder = False
        self._was_holder = False
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"LeaseDatabaseLocker(table={self._statements.full_table_name!r}, holder={self._holder_id!r})"

    @property
    def statements(self) -> LeaseStatements:
        return self._statements

    @property
    def config(self) -> LeaseConfig:
        return self._config

    @property
    def broker(self) -> Broker | None:
        return self._broker

    @broker.setter
    def broker(self, broker: Broker | None) -> None:
        self._broker = broker

    @property
    def holder_id(self) -> str:
        """Lease holder id, resolved from the broker name on first use."""
        if self._holder_id is None and self._broker is not None:
            self._holder_id = self._broker.broker_name
        if not self._holder_id:
            raise LeaseConfigError("No lease holder id configured and no broker to derive it from")
        return self._holder_id

    @property
    def is_holder(self) -> bool:
        return self._is_holder

    @property
    def lease_duration_millis(self) -> int:
        return self._config.lease_duration_millis

    async def configure(self) -> None:
        """Check the holder identity, then create the lease table on startup when configured to.

        Raises:
            LeaseConfigError: Neither a holder id nor a broker is configured.
            SchemaBootstrapError: The lease table could not be created.
        """
        self.holder_id
        if self.lease_duration_millis <= self._config.keep_alive_period_millis:
            logger.warning(
                "Lease duration %d ms does not exceed keep-alive period %d ms; "
                "a single missed renewal will lose the lease",
                self.lease_duration_millis,
                self._config.keep_alive_period_millis,
            )

        if self._config.create_table_on_startup:
            await SchemaBootstrapper(
                self._engine,
                self._statements,
                broker=self._broker,
                query_timeout=self._config.query_timeout,
            ).create()

    async def keep_alive(self) -> bool:
        """Claim or extend the lease for this holder.

        Returns:
            True if exactly one row was updated: the lease was extended or
            an expired lease was captured. False if another holder owns an
            unexpired lease.

        Raises:
            LeaseIOError: Any storage failure, or a missing holder identity.
                It is reported to the broker first; callers must treat the
                lease as lost.
        """
        async with self._lock:
            try:
                holder = self.holder_id
                with LEASE_KEEPALIVE_DURATION.time():
                    acquired = await self._update_lease(holder)
            except Exception as e:
                holder = self._holder_id
                logger.warning(
                    "%s, failed to update lease: %s",
                    holder,
                    e,
                    extra={
                        "event": LogEvent.LEASE_UPDATE_FAILED,
                        "error_class": classify_error(e),
                        "error": str(e),
                    },
                )
                LEASE_KEEPALIVE_TOTAL.labels(result="error").inc()
                self._is_holder = False
                LEASE_IS_HOLDER.set(0)
                error = LeaseIOError(f"{holder}, failed to update lease: {e}")
                error.__cause__ = e
            else:
                self._record_result(holder, acquired)
                return acquired

        # Reported outside the lock: the failure handler may call keep_alive again
        await self._report(error)
        raise error

    async def _update_lease(self, holder: str) -> bool:
        async with acquire_connection(self._engine) as conn:
            offset = await self._clock.offset_millis(conn)
            now = current_millis() + offset
            expiry = now + self.lease_duration_millis
            statement = self._statements.lease_update(holder, expiry=expiry, now=now)

            logger.debug("%s, lease keep-alive update until %d (store now %d)", holder, expiry, now)

            async with conn.begin():
                async with asyncio.timeout(self._config.query_timeout):
                    result = await conn.execute(statement)
                    updated = result.rowcount
            return updated == 1

    def _record_result(self, holder: str, acquired: bool) -> None:
        self._is_holder = acquired
        LEASE_IS_HOLDER.set(1 if acquired else 0)
        LEASE_KEEPALIVE_TOTAL.labels(result="acquired" if acquired else "rejected").inc()

        if acquired and not self._was_holder:
            logger.info(
                "Acquired lease (holder=%s, table=%s)",
                holder,
                self._statements.full_table_name,
                extra={"event": LogEvent.LEASE_ACQUIRED},
            )
        elif acquired:
            logger.debug("Renewed lease (holder=%s)", holder, extra={"event": LogEvent.LEASE_RENEWED})
        elif self._was_holder:
            logger.warning("Lost lease (holder=%s)", holder, extra={"event": LogEvent.LEASE_LOST})
        else:
            logger.debug("Lease held by another broker", extra={"event": LogEvent.LEASE_REJECTED})

        self._was_holder = acquired

    async def _report(self, error: LeaseIOError) -> None:
        if self._broker is None:
            return
        await self._broker.handle_io_error(error)

    async def release(self) -> bool:
        """Clear the lease if this holder owns it, so a peer can take over at once."""
        holder = self.holder_id

        async with self._lock:
            try:
                async with acquire_connection(self._engine) as conn:
                    async with conn.begin():
                        async with asyncio.timeout(self._config.query_timeout):
                            result = await conn.execute(self._statements.lease_release(holder))
                            released = result.rowcount == 1
            except Exception as e:
                logger.warning("%s, failed to release lease: %s", holder, e)
                raise LeaseIOError(f"{holder}, failed to release lease: {e}") from e

            self._is_holder = False
            self._was_holder = False
            LEASE_IS_HOLDER.set(0)

        if released:
            logger.info("Released lease (holder=%s)", holder, extra={"event": LogEvent.LEASE_RELEASED})
        else:
            logger.warning("Lease was not held during release (holder=%s)", holder)
        return released

    async def read_lease(self) -> LeaseRow | None:
        """Read the lease row as currently recorded, None if it is missing."""
        async with acquire_connection(self._engine) as conn:
            async with asyncio.timeout(self._config.query_timeout):
                result = await conn.execute(self._statements.lease_select())
                row = result.first()

        if row is None:
            return None
        return LeaseRow(id=row.id, expiry=row.time, holder=row.holder)

