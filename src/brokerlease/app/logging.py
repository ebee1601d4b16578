"""JSON logging with the lease holder attached to every record."""

import logging
import sys
import time
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from brokerlease.app.config import get_settings

holder_id_ctx: ContextVar[str | None] = ContextVar("holder_id", default=None)


def get_holder_id() -> str | None:
    return holder_id_ctx.get()


def set_holder_id(holder_id: str | None) -> None:
    holder_id_ctx.set(holder_id)


class RateLimitFilter(logging.Filter):
    """Drop repeats of the same log call beyond rate_per_minute.

    During a store outage every acquisition attempt logs the same warning.
    Dropped records are counted, and the next record that passes carries
    the count as its ``suppressed`` field. ERROR and above always pass.
    """

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._seen: dict[tuple[str, int], deque[float]] = {}
        self._dropped: dict[tuple[str, int], int] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = (record.name, record.lineno)
        now = time.monotonic()
        seen = self._seen.setdefault(key, deque())
        while seen and now - seen[0] >= 60:
            seen.popleft()

        if len(seen) >= self.rate_per_minute:
            self._dropped[key] = self._dropped.get(key, 0) + 1
            return False

        seen.append(now)
        if dropped := self._dropped.pop(key, 0):
            record.suppressed = dropped
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with service, schema version and the current holder id."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        settings = get_settings()
        self._schema_version = settings.logging.schema_version
        self._service = settings.logging.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        log_record["schema_version"] = self._schema_version
        if holder_id := get_holder_id():
            log_record["holder_id"] = holder_id


def setup_logging(level: int | None = None) -> None:
    """Install the JSON handler on the root logger.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    settings = get_settings()
    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter())
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
