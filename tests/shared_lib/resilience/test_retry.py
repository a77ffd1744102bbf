"""
Unit tests for retry-with-backoff.

Tests cover:
- Delay computation, jitter bounds, Retry-After and the max delay cap
- Classification of transient errors
- run_with_retry success, exhaustion and non-retryable errors
"""

import pytest
from unittest.mock import AsyncMock
import httpx

from shared_lib.exceptions import ClientError, HTTPError, NetworkError, RateLimitExceeded
from shared_lib.resilience import RetryConfig, is_retryable, run_with_retry


class TestRetryConfig:
    def test_exponential_delay_without_jitter(self):
        config = RetryConfig(initial_delay=0.1, backoff_base=2.0, jitter=False)

        assert [config.delay_for(n) for n in range(4)] == pytest.approx(
            [0.1, 0.2, 0.4, 0.8]
        )

    def test_delay_is_capped(self):
        config = RetryConfig(initial_delay=1, max_delay=5, jitter=False)

        assert config.delay_for(10) == 5

    def test_jitter_bounds(self):
        config = RetryConfig(initial_delay=1, jitter=True)

        for _ in range(50):
            assert 0.5 <= config.delay_for(0) <= 1.5

    def test_retry_after_wins_when_longer(self):
        config = RetryConfig(initial_delay=0.1, jitter=False)

        assert config.delay_for(0, retry_after=3) == 3
        assert config.delay_for(0, retry_after=0.01) == pytest.approx(0.1)

    def test_retry_after_still_capped(self):
        config = RetryConfig(max_delay=2, jitter=False)

        assert config.delay_for(0, retry_after=60) == 2


class TestIsRetryable:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_transient_statuses(self, status):
        assert is_retryable(HTTPError("x", status_code=status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 501])
    def test_permanent_statuses(self, status):
        assert not is_retryable(HTTPError("x", status_code=status))

    def test_network_errors(self):
        assert is_retryable(NetworkError("down"))
        assert is_retryable(httpx.ConnectError("refused"))
        assert is_retryable(httpx.ReadTimeout("slow"))

    def test_other_errors(self):
        assert not is_retryable(ClientError("nope"))
        assert not is_retryable(ValueError("bad"))


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        operation = AsyncMock(return_value="ok")
        sleep = AsyncMock()

        assert await run_with_retry(operation, sleep=sleep) == "ok"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        operation = AsyncMock(side_effect=[NetworkError("a"), NetworkError("b"), "ok"])
        sleep = AsyncMock()
        config = RetryConfig(max_retries=3, initial_delay=0.1, jitter=False)

        assert await run_with_retry(operation, config, sleep=sleep) == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_three_failures_record_three_delays(self):
        operation = AsyncMock(
            side_effect=[NetworkError("a"), NetworkError("b"), NetworkError("c"), "ok"]
        )
        sleep = AsyncMock()
        config = RetryConfig(max_retries=3, initial_delay=0.1, jitter=False)

        assert await run_with_retry(operation, config, sleep=sleep) == "ok"
        assert operation.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        operation = AsyncMock(side_effect=NetworkError("down"))
        sleep = AsyncMock()

        with pytest.raises(NetworkError):
            await run_with_retry(operation, RetryConfig(max_retries=2), sleep=sleep)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        operation = AsyncMock(side_effect=HTTPError("bad request", status_code=400))
        sleep = AsyncMock()

        with pytest.raises(HTTPError):
            await run_with_retry(operation, sleep=sleep)

        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_honors_retry_after(self):
        operation = AsyncMock(side_effect=[RateLimitExceeded("slow", retry_after=2.5), "ok"])
        sleep = AsyncMock()
        config = RetryConfig(initial_delay=0.1, jitter=False)

        assert await run_with_retry(operation, config, sleep=sleep) == "ok"
        sleep.assert_awaited_once_with(2.5)

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        operation = AsyncMock(side_effect=[KeyError("x"), "ok"])
        sleep = AsyncMock()

        result = await run_with_retry(
            operation, retryable=lambda e: isinstance(e, KeyError), sleep=sleep
        )

        assert result == "ok"
