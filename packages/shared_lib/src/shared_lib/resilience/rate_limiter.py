"""
# Rate Limiters

Process-local rate limiting strategies shared by every outbound call.

## Strategies:
- **SlidingWindowRateLimiter**: at most `max_requests` per rolling window
- **TokenBucketRateLimiter**: continuous refill, fractional consumption
- **EndpointRateLimiter**: one sliding window per endpoint, with a shared default

## Concurrency:
All limiters are guarded by a `threading.Lock`. The wait duration is
computed while holding the lock; the actual sleep happens outside it so
concurrent callers never serialize on each other's sleep.

## Example:
```python
limiter = SlidingWindowRateLimiter(max_requests=300, window_seconds=60)

wait = limiter.acquire()
if wait > 0:
    print(f"Throttled, retry in {wait:.2f}s")

# Or simply suspend until a slot is free
await limiter.wait_if_needed()
```
"""

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Callable


logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_MAX_REQUESTS = 100
DEFAULT_ENDPOINT_WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    # Sliding Window Rate Limiter

    Counts requests inside a continuously moving time window.

    ## Args:
    - `max_requests` (int): Requests allowed per window
    - `window_seconds` (float): Window length in seconds
    - `clock` (callable): Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._requests: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    def acquire(self) -> float:
        """
        Try to take a slot in the current window.

        ## Returns:
        - `float`: `0.0` if the request was recorded, otherwise the number of
          seconds until the oldest request leaves the window (nothing recorded)
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            if len(self._requests) < self.max_requests:
                self._requests.append(now)
                return 0.0

            return max(self._requests[0] + self.window_seconds - now, 0.0)

    async def wait_if_needed(self) -> None:
        """Suspend until a slot is available, then record the request."""
        while True:
            wait = self.acquire()
            if wait <= 0:
                return
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
            await asyncio.sleep(wait)

    def request_count(self) -> int:
        """Number of requests currently inside the window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._requests)

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


class TokenBucketRateLimiter:
    """
    # Token Bucket Rate Limiter

    Capacity is modelled as tokens that refill at a constant rate. Expensive
    calls can consume more than one token, and fractional amounts are allowed.

    ## Args:
    - `max_tokens` (float): Bucket capacity (the bucket starts full)
    - `refill_rate` (float): Tokens added per second
    """

    def __init__(
        self,
        max_tokens: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")

        self.max_tokens = float(max_tokens)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(max_tokens)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.max_tokens, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def consume(self, tokens: float = 1.0) -> float:
        """
        Consume `tokens` if they are available.

        ## Returns:
        - `float`: `0.0` when consumed, otherwise the seconds until enough
          tokens will have accumulated

        ## Raises:
        - `ValueError`: If `tokens` is not positive or exceeds the capacity
        """
        if tokens <= 0:
            raise ValueError("tokens must be positive")
        if tokens > self.max_tokens:
            raise ValueError(
                f"Cannot consume {tokens} tokens from a bucket of {self.max_tokens}"
            )

        with self._lock:
            self._refill(self._clock())

            if self._tokens >= tokens:
                self._tokens -= tokens
                return 0.0

            return (tokens - self._tokens) / self.refill_rate

    async def wait_and_consume(self, tokens: float = 1.0) -> None:
        while True:
            wait = self.consume(tokens)
            if wait <= 0:
                return
            await asyncio.sleep(wait)

    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


class EndpointRateLimiter:
    """
    # Per-Endpoint Rate Limiter

    Maps endpoint identifiers (usually the URL path) to their own sliding
    window limiter. Endpoints without an explicit limit share one default
    limiter.

    ## Example:
    ```python
    limiter = EndpointRateLimiter()
    limiter.add_endpoint_limit("/refresh-access-token", 10, 60)

    await limiter.wait_for("/refresh-access-token")
    ```
    """

    def __init__(
        self,
        default_max_requests: int = DEFAULT_ENDPOINT_MAX_REQUESTS,
        default_window_seconds: float = DEFAULT_ENDPOINT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self._default = SlidingWindowRateLimiter(
            default_max_requests, default_window_seconds, clock=clock
        )
        self._lock = threading.Lock()

    def add_endpoint_limit(
        self, endpoint: str, max_requests: int, window_seconds: float
    ) -> None:
        limiter = SlidingWindowRateLimiter(max_requests, window_seconds, clock=self._clock)
        with self._lock:
            self._limiters[endpoint] = limiter
        logger.debug(
            f"Rate limit for {endpoint}: {max_requests} requests / {window_seconds}s"
        )

    def limiter_for(self, endpoint: str) -> SlidingWindowRateLimiter:
        with self._lock:
            return self._limiters.get(endpoint, self._default)

    def acquire(self, endpoint: str) -> float:
        return self.limiter_for(endpoint).acquire()

    async def wait_for(self, endpoint: str) -> None:
        await self.limiter_for(endpoint).wait_if_needed()

    def reset(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
        for limiter in limiters:
            limiter.reset()
        self._default.reset()
