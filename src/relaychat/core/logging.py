"""
Logging configuration for RelayChat.

JSON lines in production, coloured console output in development. Realtime
code logs channel keys and retry counters through ``extra``; both formatters
keep them.
"""

import logging
import sys
from typing import Any

import orjson

# LogRecord attributes that are not user-supplied ``extra`` fields
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Transport libraries that log every frame at INFO/DEBUG
_NOISY_LOGGERS = (
    "realtime",
    "websockets",
    "httpx",
    "httpcore",
    "hpack",
    "asyncio",
)

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s"


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed to a log call through ``extra``."""
    return {
        k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = record_extras(record)
        if extra:
            log_data["extra"] = extra

        # Exceptions and enums in ``extra`` fall back to str()
        return orjson.dumps(log_data, default=str).decode("utf-8")


class ConsoleFormatter(logging.Formatter):
    """Coloured level names, with ``extra`` fields appended as key=value."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        record.levelname = f"{self.COLORS.get(levelname, self.RESET)}{levelname}{self.RESET}"
        try:
            line = super().format(record)
        finally:
            record.levelname = levelname

        extra = record_extras(record)
        if extra:
            line += " [" + " ".join(f"{k}={v}" for k, v in extra.items()) + "]"
        return line


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure the root logger.

    Replaces any existing root handlers with a single stdout handler and
    quietens the realtime transport's own loggers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Emit JSON lines instead of coloured console output
    """
    level = log_level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_logs:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ConsoleFormatter(CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging configured", extra={"log_level": level, "json_logs": json_logs}
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (usually ``__name__``)."""
    return logging.getLogger(name)
