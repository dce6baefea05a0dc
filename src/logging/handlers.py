# src/logging/handlers.py - v1
"""File handlers for the service log.

LOG_ROTATION selects the policy: a size such as ``10MB`` rotates by size,
``daily`` / ``hourly`` rotate by time. LOG_RETENTION is the number of
rotated files kept either way.
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

_SIZE_RE = re.compile(r"^(\d+)\s*(B|KB|MB|GB)?$", re.IGNORECASE)
_MULTIPLIERS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}
_TIMED = {"daily": "midnight", "hourly": "H"}


def parse_size(size_str: str) -> int:
    """Parse '10MB' into bytes. A bare number is bytes."""
    match = _SIZE_RE.match(size_str.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    unit = (match.group(2) or "B").upper()
    return int(match.group(1)) * _MULTIPLIERS[unit]


def create_file_handler(
    log_file: str | Path,
    rotation: str = "10MB",
    retention: int = 30,
) -> logging.Handler:
    """Build the rotating handler matching ``rotation``; parent dirs are created."""
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    when = _TIMED.get(rotation.strip().lower())
    if when is not None:
        return TimedRotatingFileHandler(
            filename=str(path), when=when, backupCount=retention, encoding="utf-8", utc=True
        )
    return RotatingFileHandler(
        filename=str(path),
        maxBytes=parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )
