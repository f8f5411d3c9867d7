"""
Tests for retry with backoff.
"""

import asyncio

import pytest

from casualty_ai.services.retry_utils import is_transient_error, retry_with_backoff


class Flaky:
    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestIsTransientError:
    """Tests for transient error detection."""

    @pytest.mark.parametrize("error", [
        RuntimeError("429 Too Many Requests"),
        RuntimeError("503 Service Unavailable"),
        RuntimeError("Quota exceeded for project"),
        RuntimeError("Deadline expired"),
        asyncio.TimeoutError(),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    def test_permanent(self):
        assert not is_transient_error(ValueError("invalid argument"))


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    async def test_recovers_from_transient_errors(self):
        """Test that transient failures are retried until success."""
        func = Flaky(2, RuntimeError("429 rate limited"))

        assert await retry_with_backoff(func, max_retries=3, base_delay=0) == "ok"
        assert func.calls == 3

    async def test_gives_up_after_max_retries(self):
        """Test that the last transient error propagates."""
        func = Flaky(5, RuntimeError("503 unavailable"))

        with pytest.raises(RuntimeError, match="503"):
            await retry_with_backoff(func, max_retries=2, base_delay=0)
        assert func.calls == 2

    async def test_permanent_error_is_not_retried(self):
        """Test that a non-transient error raises on the first attempt."""
        func = Flaky(1, ValueError("bad request"))

        with pytest.raises(ValueError):
            await retry_with_backoff(func, max_retries=3, base_delay=0)
        assert func.calls == 1

    async def test_attempt_timeout(self):
        """Test that each attempt is bounded by the timeout."""
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await retry_with_backoff(slow, max_retries=2, timeout=0.01, base_delay=0)
        assert calls == 2

    async def test_custom_predicate(self):
        """Test a caller-supplied retryable predicate."""
        func = Flaky(1, KeyError("missing"))

        result = await retry_with_backoff(
            func, max_retries=2, base_delay=0, is_retryable=lambda e: isinstance(e, KeyError)
        )
        assert result == "ok"
