"""Logging configuration for basehub.

Two output formats:
- text: one line per record, event name first, for operators at a terminal
- json: structured records for log aggregation

Records go to stderr; stdout carries command output only.
"""

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger

from basehub.config import LoggingConfig

# Extra fields whose values are never written out
_SECRET_MARKERS = ("password", "secret", "_key", "token")
_REDACTED = "***"


class RateLimitFilter(logging.Filter):
    """Drop repeats of the same warning within a time window.

    Records are keyed by their structured event and instance when present,
    otherwise by logger, line and message. Listing against an unreachable
    runtime would otherwise emit one identical warning per call.

    Args:
        rate_limit_seconds: Minimum seconds between identical records.
        max_cache_size: Keys remembered before the oldest are dropped.
    """

    def __init__(
        self,
        rate_limit_seconds: float = 5.0,
        max_cache_size: int = 1000,
        name: str = "",
    ) -> None:
        super().__init__(name)
        self._rate_limit = rate_limit_seconds
        self._max_cache = max_cache_size
        self._seen: dict[tuple[str, ...], float] = {}

    @staticmethod
    def _key(record: logging.LogRecord) -> tuple[str, ...]:
        event = getattr(record, "event", None)
        if event is not None:
            return (str(event), str(getattr(record, "instance_id", "")), record.getMessage())
        return (record.name, str(record.lineno), record.getMessage())

    def filter(self, record: logging.LogRecord) -> bool:
        # Errors always pass
        if record.levelno >= logging.ERROR:
            return True

        key = self._key(record)
        now = time.monotonic()
        previous = self._seen.get(key)
        if previous is not None and now - previous < self._rate_limit:
            return False
        self._seen[key] = now

        if len(self._seen) > self._max_cache:
            for stale in sorted(self._seen, key=self._seen.__getitem__)[: self._max_cache // 10]:
                del self._seen[stale]
        return True


def _is_secret(field: str) -> bool:
    lowered = field.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


class BaseHubJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for the instance manager.

    Adds timestamp, level, logger, service, pid and source location, and
    masks any extra field that looks like a credential.
    """

    def __init__(self, config: LoggingConfig, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._service = config.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        for field in list(log_record):
            if _is_secret(field):
                log_record[field] = _REDACTED

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        log_record["pid"] = record.process
        log_record["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


class EventTextFormatter(logging.Formatter):
    """Plain text with the structured event and instance id inlined."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(tag)s%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        event = getattr(record, "event", None)
        if event is not None:
            parts.append(f"[{event}]")
        instance_id = getattr(record, "instance_id", None)
        if instance_id:
            parts.append(f"({instance_id})")
        record.tag = " ".join(parts) + " " if parts else ""
        return super().format(record)


def setup_logging(config: LoggingConfig) -> None:
    """Install a single stderr handler on the root logger."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    formatter: logging.Formatter
    if config.format == "json":
        formatter = BaseHubJsonFormatter(config)
    else:
        formatter = EventTextFormatter()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RateLimitFilter(rate_limit_seconds=5.0))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # HTTP client chatter from runtime pings and readiness polling
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
