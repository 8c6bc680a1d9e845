"""Logging setup for the stackpilot CLI and library users.

Two output modes:
- JSON lines on stdout for CI systems and log shippers, with every `extra`
  field of a record carried as a top-level key
- Plain single-line records on stderr for interactive use, so they never mix
  with command output
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

# LogRecord attributes that are not `extra` fields
RESERVED_RECORD_ATTRS: frozenset[str] = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Azure SDK loggers that are chatty at INFO
NOISY_LOGGERS = ("azure", "azure.core.pipeline.policies.http_logging_policy", "urllib3")


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Install a single root handler. Calling again replaces it.

    Args:
        level: Root log level.
        json_format: JSON lines (True) or plain text (False).
        stream: Output stream; stdout for JSON, stderr for plain text by default.
    """
    if stream is None:
        stream = sys.stdout if json_format else sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
