# src/core/retry.py - v1
"""Retry policy with exponential backoff for transient storage errors.

Only TransientIOError is retried. Any other exception propagates on the
first occurrence; the last transient error is re-raised once exhausted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chunkzip.core.errors import TransientIOError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for transient I/O."""

    max_retries: int = 3
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True


DEFAULT_RETRY_CONFIG = RetryConfig()


def _compute_delay(config: RetryConfig, attempt: int) -> float:
    """Compute delay for a given attempt (0-based)."""
    delay = min(config.base_delay_s * (config.backoff_factor ** attempt), config.max_delay_s)
    if config.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    label: str = "operation",
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> Any:
    """Execute an async function, retrying transient I/O failures.

    Raises:
        TransientIOError: The last transient error once retries are exhausted.
        Exception: Any non-transient error, immediately.
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except TransientIOError as e:
            attempts += 1
            if attempts > cfg.max_retries:
                logger.warning(
                    "%s failed after %d attempts: %s", label, attempts, e.message
                )
                raise

            delay = _compute_delay(cfg, attempts - 1)
            logger.debug(
                "%s transient failure (attempt %d/%d), retrying in %.2fs",
                label, attempts, cfg.max_retries, delay,
            )
            await asyncio.sleep(delay)
