"""
Structured Logging Setup

All gateway loggers live under the `fieldbridge` logger, which owns the
single stdout handler. Output is one JSON object per line by default, or
plain text for interactive use.

Environment overrides (read whenever a service logger is created):
- FIELDBRIDGE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
- FIELDBRIDGE_LOG_FORMAT: json or text (default json)
"""

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Callable

ROOT_LOGGER = "fieldbridge"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# LogRecord attributes that are not user-supplied `extra` fields
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "service"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with `extra` fields at the top level"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Adds the adapter's context (at least `service`) to every record"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the gateway's stdout handler and return a service logger.

    Args:
        service_name: Dotted name below `fieldbridge` (e.g. "device.runtime")
        log_level: Level name; unknown names fall back to INFO
        json_format: JSON lines when True, plain text otherwise

    Returns:
        The `fieldbridge.<service_name>` logger
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(_level(log_level))
    root.handlers = [handler]
    root.propagate = False

    return logging.getLogger(f"{ROOT_LOGGER}.{service_name}")


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """Service logger configured from FIELDBRIDGE_LOG_LEVEL / FIELDBRIDGE_LOG_FORMAT."""
    log_level = os.environ.get("FIELDBRIDGE_LOG_LEVEL", "INFO")
    json_format = os.environ.get("FIELDBRIDGE_LOG_FORMAT", "json").lower() != "text"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


class RateLimitedLogger:
    """
    Suppress repeats of an identical message within a window.

    Only the log output is limited; callers keep doing their work on
    every occurrence. When a message is let through after suppression,
    the number of dropped repeats is appended.

    Usage:
        limited = RateLimitedLogger(logger, window_seconds=60)
        limited.warning("inverter-1", "Timed out")
    """

    def __init__(
        self,
        logger: logging.LoggerAdapter | logging.Logger,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (message, first_logged_at, suppressed_count)
        self._last: dict[str, tuple[str, float, int]] = {}

    def _should_log(self, key: str, message: str) -> tuple[bool, int]:
        now = self._clock()
        previous = self._last.get(key)
        if previous is not None:
            last_message, logged_at, suppressed = previous
            if last_message == message and now - logged_at < self.window_seconds:
                self._last[key] = (last_message, logged_at, suppressed + 1)
                return False, 0
            if last_message == message:
                self._last[key] = (message, now, 0)
                return True, suppressed
        self._last[key] = (message, now, 0)
        return True, 0

    def log(self, level: int, key: str, message: str, **kwargs: Any) -> bool:
        """Log unless an identical message for `key` was logged recently.

        Returns True if the message was emitted.
        """
        emit, suppressed = self._should_log(key, message)
        if not emit:
            return False
        if suppressed:
            message = f"{message} (repeated {suppressed}x)"
        self.logger.log(level, message, **kwargs)
        return True

    def warning(self, key: str, message: str, **kwargs: Any) -> bool:
        return self.log(logging.WARNING, key, message, **kwargs)

    def error(self, key: str, message: str, **kwargs: Any) -> bool:
        return self.log(logging.ERROR, key, message, **kwargs)

    def reset(self, key: str) -> None:
        """Forget the last message for `key` (e.g. after recovery)."""
        self._last.pop(key, None)


def log_device_read(
    logger: logging.LoggerAdapter,
    device_id: str,
    datapoint_id: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a device data point read"""
    if success:
        logger.debug(
            f"Read {device_id}.{datapoint_id} = {value}",
            extra={"device": device_id, "datapoint": datapoint_id, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {device_id}.{datapoint_id}",
            extra={"device": device_id, "datapoint": datapoint_id},
        )


def log_device_write(
    logger: logging.LoggerAdapter,
    device_id: str,
    datapoint_id: str,
    value: Any,
    success: bool = True,
) -> None:
    """Log a device data point write"""
    if success:
        logger.info(
            f"Write {device_id}.{datapoint_id} = {value}",
            extra={"device": device_id, "datapoint": datapoint_id, "value": value},
        )
    else:
        logger.error(
            f"Failed to write {device_id}.{datapoint_id} = {value}",
            extra={"device": device_id, "datapoint": datapoint_id, "value": value},
        )
