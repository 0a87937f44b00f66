"""Structured logging configuration for the DevBox API and workers."""

import logging
import re
import sys
from datetime import UTC, datetime

# Bearer tokens, Tailscale keys and Hetzner tokens must never reach log sinks.
_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(r"(tskey-)[A-Za-z0-9-]+"),
    re.compile(r"(--authkey=)\S+"),
)


def redact(message: str) -> str:
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub(r"\1[REDACTED]", message)
    return message


class DevBoxFormatter(logging.Formatter):
    """Structured formatter with timestamp, level, logger name, and message."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        level = record.levelname.ljust(8)
        message = redact(record.getMessage())

        base = f"{timestamp} | {level} | {record.name} | {message}"

        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + redact(self.formatException(record.exc_info))

        return base


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application-wide logging for the API process or a worker."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(DevBoxFormatter())
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    # httpx logs full request URLs at INFO
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger("app").setLevel(level)
