"""Tests for the retry primitive."""

import logging
from unittest.mock import AsyncMock

import pytest

from onenote_export.retry import RetryPolicy, with_retry


def _flaky(failures: int, exc: type[Exception] = RuntimeError):
    """Operation that fails ``failures`` times, then returns "ok"."""
    calls = {"n": 0}

    async def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc(f"failure {calls['n']}")
        return "ok"

    return operation, calls


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        operation, calls = _flaky(0)
        sleep = AsyncMock()
        assert await with_retry(operation, RetryPolicy(), sleep=sleep) == "ok"
        assert calls["n"] == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [1, 2])
    async def test_succeeds_after_failures(self, failures):
        operation, calls = _flaky(failures)
        result = await with_retry(operation, RetryPolicy(max_attempts=3), sleep=AsyncMock())
        assert result == "ok"
        assert calls["n"] == failures + 1

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        operation, calls = _flaky(10)
        with pytest.raises(RuntimeError, match="failure 3") as exc_info:
            await with_retry(operation, RetryPolicy(max_attempts=3, label="Fetch thing"), sleep=AsyncMock())
        assert calls["n"] == 3
        assert any("Fetch thing" in note and "3 attempt" in note for note in exc_info.value.__notes__)

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        operation, _ = _flaky(10)
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=5, initial_delay=0.5, max_delay=1.2, backoff_multiplier=2)
        with pytest.raises(RuntimeError):
            await with_retry(operation, policy, sleep=sleep)
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [0.5, 1.0, 1.2, 1.2]

    @pytest.mark.asyncio
    async def test_total_wait_bounded(self):
        """Total backoff never exceeds (max_attempts - 1) * max_delay."""
        operation, _ = _flaky(10)
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=4, initial_delay=9.0, max_delay=2.0)
        with pytest.raises(RuntimeError):
            await with_retry(operation, policy, sleep=sleep)
        assert sum(c.args[0] for c in sleep.await_args_list) <= 3 * 2.0

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        operation, calls = _flaky(10, exc=KeyError)
        sleep = AsyncMock()
        with pytest.raises(KeyError):
            await with_retry(operation, RetryPolicy(), retry_on=(RuntimeError,), sleep=sleep)
        assert calls["n"] == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        operation, calls = _flaky(1)
        with pytest.raises(RuntimeError):
            await with_retry(operation, RetryPolicy(max_attempts=1), sleep=AsyncMock())
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_logs_attempts(self, caplog):
        operation, _ = _flaky(1)
        with caplog.at_level(logging.WARNING, logger="onenote_export.retry"):
            await with_retry(operation, RetryPolicy(label="Download x"), sleep=AsyncMock())
        assert "Download x failed (attempt 1/3)" in caplog.text

    @pytest.mark.asyncio
    async def test_silent_suppresses_logging(self, caplog):
        operation, _ = _flaky(10)
        with caplog.at_level(logging.DEBUG, logger="onenote_export.retry"):
            with pytest.raises(RuntimeError):
                await with_retry(operation, RetryPolicy(silent=True), sleep=AsyncMock())
        assert [r for r in caplog.records if r.name == "onenote_export.retry"] == []


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.max_delay == 5.0
        assert policy.backoff_multiplier == 2.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_with_label(self):
        policy = RetryPolicy(max_attempts=2).with_label("Direct download")
        assert policy.label == "Direct download"
        assert policy.max_attempts == 2
