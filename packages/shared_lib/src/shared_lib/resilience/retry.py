"""
Retry-with-backoff for async operations.

Only errors classified as transient are retried: connection failures,
timeouts and the HTTP statuses 429, 500, 502, 503 and 504. Everything else
propagates after the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from shared_lib.exceptions import HTTPError, NetworkError, RateLimitExceeded


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff parameters.

    The delay before retry number `attempt` (0-based) is
    `min(initial_delay * backoff_base ** attempt, max_delay)`, scaled by a
    random factor in [0.5, 1.5] when `jitter` is enabled.
    """

    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 30.0
    backoff_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        delay = min(self.initial_delay * self.backoff_base**attempt, self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return min(delay, self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Return True when `error` is a transient failure worth retrying."""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(error, HTTPError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return False


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` and retry it on transient failures.

    ## Args:
    - `operation`: Zero-argument coroutine factory; called once per attempt
    - `config` (RetryConfig): Backoff parameters, defaults to `RetryConfig()`
    - `retryable`: Classifier deciding whether an error is transient
    - `sleep`: Suspension primitive, injectable for tests

    ## Returns:
    - The operation's result from the first successful attempt

    ## Raises:
    - The first non-retryable error, or the last error once `max_retries`
      retries have been spent
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            if not retryable(e) or attempt >= config.max_retries:
                if attempt > 0:
                    logger.warning(f"❌ Giving up after {attempt + 1} attempts: {e}")
                raise

            retry_after = e.retry_after if isinstance(e, RateLimitExceeded) else None
            delay = config.delay_for(attempt, retry_after)
            attempt += 1
            logger.info(
                f"🔄 Retry {attempt}/{config.max_retries} in {delay:.2f}s after: {e}"
            )
            await sleep(delay)
