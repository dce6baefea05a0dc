# src/logging/logger.py - v1
"""Logging setup for the ``chunkzip`` logger tree.

Records carry the order context of the generation that emitted them
(container, order, kind, run, component). Pipeline errors attached via
``exc_info`` contribute their reason code and retryability, so failed runs
can be grepped by ``reason_code`` without parsing tracebacks.

Logs go to stderr: the CLI prints its results as JSON on stdout.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

from chunkzip.config.settings import Settings
from chunkzip.core.errors import ArchiveError
from chunkzip.logging.context import get_context

ROOT_LOGGER = "chunkzip"

# Transport-level chatter from the AWS SDK during part uploads.
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")


def _error_fields(record: logging.LogRecord) -> dict[str, Any]:
    if not record.exc_info or record.exc_info[1] is None:
        return {}
    exc = record.exc_info[1]
    if isinstance(exc, ArchiveError):
        return {"reason_code": exc.reason_code, "retryable": exc.retryable}
    return {"reason_code": type(exc).__name__}


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = get_context().as_dict()
        if context:
            entry["context"] = context
        data = getattr(record, "data", None)
        if data:
            entry["data"] = data
        entry.update(_error_fields(record))
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line format for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_context()
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        parts = [stamp, f"[{record.levelname:8s}]", record.name]
        if ctx.container_id and ctx.order_id:
            order = f"{ctx.container_id}/{ctx.order_id}"
            if ctx.archive_kind == "final":
                order += "/final"
            if ctx.run_id:
                order += f" run={ctx.run_id}"
            parts.append(f"[{order}]")
        if ctx.component:
            parts.append(f"({ctx.component})")
        reason = _error_fields(record).get("reason_code")
        if reason:
            parts.append(f"<{reason}>")
        parts.append(f"- {record.getMessage()}")
        return " ".join(parts)


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
    rotation: str = "10MB",
    retention: int = 30,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Configure the ``chunkzip`` logger; safe to call more than once.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        log_format: "json" or "text".
        log_file: Optional log file, rotated per ``rotation``.
        rotation: Size ("10MB") or "daily" / "hourly".
        retention: Rotated files kept.
        stream: Console stream (default stderr).
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = JsonFormatter() if log_format == "json" else TextFormatter()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        from chunkzip.logging.handlers import create_file_handler

        file_handler = create_file_handler(log_file, rotation=rotation, retention=retention)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def setup_logging_from_settings(settings: Settings, verbose: bool = False) -> logging.Logger:
    """Apply the LOG_* settings; ``verbose`` forces DEBUG."""
    return setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
