"""Tests for bounded retry, backoff and call timeouts."""

import asyncio

import pytest

from evidentia.lib.errors import ExternalServiceError, ParseError
from evidentia.lib.retry import RetryPolicy, backoff_delay, retry_async, with_timeout
from tests.fakes import RecordingSleep


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ExternalServiceError("model_gateway", "connection refused")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.unit
class TestBackoff:
    def test_delay_doubles_per_attempt(self):
        assert [backoff_delay(a) for a in range(3)] == [1.0, 2.0, 4.0]
        assert backoff_delay(2, base_seconds=0.5) == 2.0


@pytest.mark.unit
class TestRetryAsync:
    """Bounded loop with awaited backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        sleep = RecordingSleep()
        fn = Flaky(failures=2)

        result = await retry_async(fn, RetryPolicy(max_attempts=3, sleep=sleep))

        assert result == "ok"
        assert fn.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        sleep = RecordingSleep()
        fn = Flaky(failures=5)

        with pytest.raises(ExternalServiceError, match="connection refused"):
            await retry_async(fn, RetryPolicy(max_attempts=3, sleep=sleep))

        assert fn.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        fn = Flaky(failures=5, error=ParseError("bad"))

        with pytest.raises(ParseError):
            await retry_async(fn, RetryPolicy(max_attempts=3, sleep=RecordingSleep()))

        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_zero_base_skips_sleep(self):
        sleep = RecordingSleep()
        fn = Flaky(failures=1)

        await retry_async(fn, RetryPolicy(max_attempts=2, backoff_base_seconds=0, sleep=sleep))

        assert sleep.delays == []


@pytest.mark.unit
class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_timeout_becomes_service_error(self):
        with pytest.raises(ExternalServiceError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, "search")

        assert exc_info.value.service == "search"
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_timeout_awaits_directly(self):
        async def value():
            return 42

        assert await with_timeout(value(), None, "search") == 42
