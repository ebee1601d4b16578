"""Store clock offset detection.

Lease expiries are written in the store's time domain so that brokers with
skewed local clocks still agree on when a lease ends. The offset is a
fairness correction only; mutual exclusion comes from the atomic update.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncConnection

from brokerlease.core.logging_schema import LogEvent
from brokerlease.infra.statements import LeaseStatements

logger = logging.getLogger(__name__)

# Key in the pooled connection's info dict; SQLAlchemy clears it when the
# DBAPI connection is invalidated, so a fresh connection is measured again.
CLOCK_OFFSET_INFO_KEY = "brokerlease.clock_offset_ms"


def current_millis() -> int:
    """Local wall clock in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def to_epoch_millis(value: datetime | str) -> int:
    """Convert a store timestamp to epoch milliseconds.

    Naive timestamps are taken as UTC (SQLite CURRENT_TIMESTAMP).
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class ClockSync:
    """Measures store time minus local time, once per connection."""

    def __init__(
        self,
        statements: LeaseStatements,
        *,
        enabled: bool = True,
        query_timeout: float | None = None,
        max_allowable_skew_millis: int = 0,
    ) -> None:
        self._statements = statements
        self._enabled = enabled
        self._query_timeout = query_timeout
        self._max_allowable_skew_millis = max_allowable_skew_millis

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def offset_millis(self, conn: AsyncConnection) -> int:
        """Return the cached offset for conn, measuring it on first use.

        Never raises: any failure falls back to a zero offset. Leaves conn
        outside of a transaction.
        """
        if not self._enabled:
            return 0

        cached = conn.info.get(CLOCK_OFFSET_INFO_KEY)
        if cached is not None:
            return cached

        try:
            offset = await self._measure(conn)
        except Exception as e:
            logger.warning(
                "Could not determine store clock offset, assuming 0: %s",
                e,
                extra={"event": LogEvent.CLOCK_SYNC_FAILED, "error": str(e)},
            )
            await self._safe_rollback(conn)
            offset = 0

        conn.info[CLOCK_OFFSET_INFO_KEY] = offset
        return offset

    async def _measure(self, conn: AsyncConnection) -> int:
        async with asyncio.timeout(self._query_timeout):
            result = await conn.execute(self._statements.current_time)
            store_time = result.scalar_one()
            local_now = current_millis()
            await conn.commit()

        offset = to_epoch_millis(store_time) - local_now
        logger.debug(
            "Store clock offset %d ms",
            offset,
            extra={"event": LogEvent.CLOCK_SYNCED, "offset_ms": offset},
        )

        if self._max_allowable_skew_millis > 0 and abs(offset) > self._max_allowable_skew_millis:
            logger.warning(
                "Store clock differs from local clock by %d ms, more than the allowed %d ms",
                offset,
                self._max_allowable_skew_millis,
                extra={"event": LogEvent.CLOCK_SKEW_EXCEEDED, "offset_ms": offset},
            )
        return offset

    async def _safe_rollback(self, conn: AsyncConnection) -> None:
        try:
            await conn.rollback()
        except Exception as e:
            logger.debug("Rollback after clock read failed: %s", e)
