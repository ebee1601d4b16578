"""Broker replica entry point.

Runs one BrokerService against the shared store until it is fenced or
receives SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal

from prometheus_client import start_http_server

from brokerlease import __version__
from brokerlease.app.config import get_settings
from brokerlease.app.logging import setup_logging
from brokerlease.control import BrokerService
from brokerlease.core.errors import BrokerLeaseError
from brokerlease.core.logging_schema import LogEvent
from brokerlease.infra import close_db, init_db

logger = logging.getLogger(__name__)


_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _stop_on_signals(loop: asyncio.AbstractEventLoop, broker: BrokerService) -> set[asyncio.Task]:
    """Stop the broker on SIGINT/SIGTERM.

    Returns the set of stop tasks started by a signal; the caller awaits
    them before tearing down the engine.
    """
    pending: set[asyncio.Task] = set()

    def _stop() -> None:
        pending.add(asyncio.create_task(broker.stop(), name="broker-stop"))

    for sig in _STOP_SIGNALS:
        loop.add_signal_handler(sig, _stop)
    return pending


async def run() -> int:
    """Run the broker until it stops.

    Returns:
        Process exit code: 0 on a clean stop, 1 when the broker was stopped
        by a failure (including fencing).
    """
    settings = get_settings()

    if settings.metrics.enabled:
        start_http_server(settings.metrics.port)
        logger.info("Metrics server listening on :%d", settings.metrics.port)

    logger.info(
        "Starting brokerlease %s as %s",
        __version__,
        settings.broker.name,
        extra={"event": LogEvent.BROKER_STARTED},
    )
    engine = await init_db()
    broker = BrokerService(
        settings.broker.name,
        engine,
        lease_config=settings.lease,
        io_handler_config=settings.io_handler,
    )

    loop = asyncio.get_running_loop()
    stopping = _stop_on_signals(loop, broker)

    try:
        await broker.start()
        if broker.is_started:
            await broker.wait_stopped()
    except BrokerLeaseError as e:
        logger.error(
            "Broker failed to start: %s",
            e.message,
            extra={"event": LogEvent.BROKER_STOPPED, "error_code": e.code},
        )
        await broker.stop(reason=e)
    finally:
        for sig in _STOP_SIGNALS:
            loop.remove_signal_handler(sig)
        if stopping:
            await asyncio.gather(*stopping)
        await close_db()

    return 0 if broker.stop_reason is None else 1


def main() -> None:
    setup_logging()
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
