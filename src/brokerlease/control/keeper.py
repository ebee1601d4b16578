"""Lease keeper - the broker's periodic lease renewal timer.

State machine per broker run:

    UNCLAIMED --keep_alive true--> HOLDING --keep_alive true--> HOLDING
    UNCLAIMED --keep_alive false--> UNCLAIMED (retry after acquire interval)
    HOLDING --keep_alive false or error--> FENCED (terminal)

On FENCED the on_lost callback is awaited exactly once and no further
renewal is attempted; recovery needs a restart.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from brokerlease.app.metrics.collector import LEASE_STATE
from brokerlease.core.domain import LeaseState
from brokerlease.core.errors import LeaseHeldError, LeaseIOError, LeaseLostError
from brokerlease.core.interfaces import Locker
from brokerlease.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_STATE_GAUGE_VALUE = {LeaseState.UNCLAIMED: 0, LeaseState.HOLDING: 1, LeaseState.FENCED: 2}


class LeaseKeeper:
    """Single serialized caller of Locker.keep_alive() for one broker."""

    def __init__(
        self,
        locker: Locker,
        on_lost: Callable[[LeaseLostError], Awaitable[None]],
        *,
        keep_alive_interval: float,
        acquire_interval: float,
        fail_if_locked: bool = False,
    ) -> None:
        """Initialize the keeper.

        Args:
            locker: Lock to acquire and renew.
            on_lost: Awaited once when a held lease is lost.
            keep_alive_interval: Seconds between renewals while holding.
            acquire_interval: Seconds between acquisition attempts.
            fail_if_locked: Raise LeaseHeldError instead of waiting when
                another broker holds the lease.
        """
        self._locker = locker
        self._on_lost = on_lost
        self._keep_alive_interval = keep_alive_interval
        self._acquire_interval = acquire_interval
        self._fail_if_locked = fail_if_locked
        self._state = LeaseState.UNCLAIMED
        self._stopped = asyncio.Event()
        LEASE_STATE.set(_STATE_GAUGE_VALUE[self._state])

    @property
    def state(self) -> LeaseState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        """Stop acquiring and renewing; returns without waiting."""
        self._stopped.set()

    def _set_state(self, state: LeaseState) -> None:
        if state is not self._state:
            logger.debug("Lease state %s -> %s", self._state, state)
        self._state = state
        LEASE_STATE.set(_STATE_GAUGE_VALUE[state])

    async def _sleep(self, interval: float) -> None:
        """Sleep for interval, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=interval)
        except TimeoutError:
            pass

    async def acquire(self) -> None:
        """Wait until the lease is held or the keeper is stopped.

        Raises:
            LeaseHeldError: fail_if_locked is set and the lease is taken.
        """
        waiting_since = time.time()
        while not self.stopped and self._state is LeaseState.UNCLAIMED:
            try:
                if await self._locker.keep_alive():
                    self._set_state(LeaseState.HOLDING)
                    logger.info(
                        "Lease acquired after waiting",
                        extra={
                            "event": LogEvent.LEASE_ACQUIRED,
                            "wait_seconds": round(time.time() - waiting_since, 1),
                        },
                    )
                    return
                if self._fail_if_locked:
                    raise LeaseHeldError(f"Lease is held by another broker, {self._locker.holder_id} will not wait")
            except LeaseIOError as e:
                logger.warning("Error acquiring lease: %s", e, extra={"event": LogEvent.LEASE_UPDATE_FAILED})

            await self._sleep(self._acquire_interval)

    async def renew(self) -> bool:
        """Run one keep-alive attempt and apply the state transition.

        Returns:
            True if the lease is held after the attempt.
        """
        if self._state is LeaseState.FENCED:
            return False

        cause: Exception | None = None
        try:
            held = await self._locker.keep_alive()
        except LeaseIOError as e:
            held = False
            cause = e

        if held:
            self._set_state(LeaseState.HOLDING)
            return True

        if self._state is LeaseState.HOLDING:
            await self._fence(cause)
        return False

    async def _fence(self, cause: Exception | None) -> None:
        self._set_state(LeaseState.FENCED)
        self.stop()

        error = LeaseLostError(f"Lease lost by {self._locker.holder_id}")
        error.__cause__ = cause
        logger.warning("Lease lost, no further renewals", extra={"event": LogEvent.LEASE_LOST})
        await self._on_lost(error)

    async def run(self) -> None:
        """Acquire if needed, then renew every keep_alive_interval until stopped or fenced."""
        if self._state is LeaseState.UNCLAIMED:
            await self.acquire()

        while not self.stopped and self._state is LeaseState.HOLDING:
            await self._sleep(self._keep_alive_interval)
            if self.stopped:
                break
            await self.renew()
