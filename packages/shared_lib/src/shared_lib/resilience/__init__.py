"""Rate limiting and retry-with-backoff shared by every outbound call."""

from .rate_limiter import (
    EndpointRateLimiter,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
)
from .retry import RETRYABLE_STATUS_CODES, RetryConfig, is_retryable, run_with_retry

__all__ = [
    "EndpointRateLimiter",
    "SlidingWindowRateLimiter",
    "TokenBucketRateLimiter",
    "RETRYABLE_STATUS_CODES",
    "RetryConfig",
    "is_retryable",
    "run_with_retry",
]
