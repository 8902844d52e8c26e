"""
Tests for the Retry Combinator

Run with: python -m pytest tests/test_retry.py -v
"""

import pytest

from kv_operator.errors import RetryExhaustedError
from kv_operator.retry import retry_async


class Flaky:
    """Fails ``failures`` times with ``error`` before returning ``value``."""

    def __init__(self, failures, error=ConnectionError("not yet"), value="done"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.mark.asyncio
class TestRetryAsync:
    """Test retry_async()."""

    async def test_first_try(self):
        op = Flaky(0)
        assert await retry_async(op, lambda e: True, attempts=3, delay=0) == "done"
        assert op.calls == 1

    async def test_succeeds_after_transient_errors(self):
        op = Flaky(2)
        assert await retry_async(op, lambda e: True, attempts=3, delay=0) == "done"
        assert op.calls == 3

    async def test_exhausted(self):
        """The last transient error is kept on the final exception."""
        op = Flaky(5)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(op, lambda e: True, attempts=3, delay=0, description="lookup")
        assert op.calls == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert "lookup" in str(exc_info.value)

    async def test_non_transient_propagates(self):
        """Errors the predicate rejects are raised at once."""
        op = Flaky(5, error=KeyError("boom"))
        with pytest.raises(KeyError):
            await retry_async(op, lambda e: isinstance(e, ConnectionError), attempts=3, delay=0)
        assert op.calls == 1

    async def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            await retry_async(Flaky(0), lambda e: True, attempts=0)
