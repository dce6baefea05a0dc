# tests/unit/core/test_unit_errors_retry.py - v1
"""Tests for core/errors.py and core/retry.py."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from chunkzip.core.errors import (
    ArchiveError,
    NoErrorToRetry,
    NoFilesError,
    NotFoundError,
    StorageError,
    TransientIOError,
    ValidationError,
)
from chunkzip.core.retry import RetryConfig, _compute_delay, with_retry

NO_WAIT = RetryConfig(max_retries=3, base_delay_s=0.0, max_delay_s=0.0, jitter=False)


class TestErrors:
    def test_to_dict_with_details(self):
        err = NotFoundError("gone", key="a/b")
        assert err.to_dict() == {"error": "not_found", "message": "gone", "details": {"key": "a/b"}}

    def test_to_dict_without_details(self):
        assert "details" not in StorageError("x").to_dict()

    def test_no_files_is_validation(self):
        err = NoFilesError("No files to zip")
        assert isinstance(err, ValidationError)
        assert err.http_status == 400
        assert err.reason_code == "no_files"

    def test_only_transient_is_retryable(self):
        assert TransientIOError("x").retryable
        assert not StorageError("x").retryable
        assert not ArchiveError("x").retryable

    def test_http_statuses(self):
        assert NoErrorToRetry("x").http_status == 400
        assert TransientIOError("x").http_status == 503
        assert ArchiveError("x").http_status == 500


class TestComputeDelay:
    def test_exponential(self):
        cfg = RetryConfig(base_delay_s=1.0, backoff_factor=2.0, max_delay_s=100.0, jitter=False)
        assert _compute_delay(cfg, 0) == 1.0
        assert _compute_delay(cfg, 3) == 8.0

    def test_capped(self):
        cfg = RetryConfig(base_delay_s=1.0, backoff_factor=10.0, max_delay_s=5.0, jitter=False)
        assert _compute_delay(cfg, 4) == 5.0

    def test_jitter_bounds(self):
        cfg = RetryConfig(base_delay_s=2.0, max_delay_s=10.0, jitter=True)
        for _ in range(20):
            assert 1.0 <= _compute_delay(cfg, 0) <= 3.0


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        fn = AsyncMock(return_value=42)
        assert await with_retry(fn, 1, config=NO_WAIT, x=2) == 42
        fn.assert_awaited_once_with(1, x=2)

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[TransientIOError("reset"), TransientIOError("reset"), "ok"])
        assert await with_retry(fn, config=NO_WAIT) == "ok"
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_reraises_last(self):
        fn = AsyncMock(side_effect=TransientIOError("reset"))
        with pytest.raises(TransientIOError):
            await with_retry(fn, config=NO_WAIT)
        assert fn.await_count == 4

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        fn = AsyncMock(side_effect=NotFoundError("missing"))
        with pytest.raises(NotFoundError):
            await with_retry(fn, config=NO_WAIT)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self):
        fn = AsyncMock(side_effect=[TransientIOError("x"), "ok"])
        cfg = RetryConfig(max_retries=1, base_delay_s=0.5, jitter=False)
        with patch("chunkzip.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await with_retry(fn, config=cfg)
        sleep.assert_awaited_once_with(0.5)
