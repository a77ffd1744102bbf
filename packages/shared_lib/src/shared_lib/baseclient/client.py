"""
Resilient base HTTP client for building API clients.

This module provides an abstract base class for creating async HTTP clients
using httpx. Every request goes through the same pipeline:

1. global rate limiter, then the per-endpoint rate limiter
2. base URL selection (rotates across interchangeable hosts)
3. the HTTP call itself, with transport errors mapped to NetworkError
4. retry-with-backoff for transient failures (see shared_lib.resilience)
"""

from abc import ABC
from typing import Any
from urllib.parse import urlparse
import logging
import random

import httpx

from shared_lib.resilience import (
    RETRYABLE_STATUS_CODES,
    EndpointRateLimiter,
    RetryConfig,
    SlidingWindowRateLimiter,
    run_with_retry,
)
from shared_lib.exceptions import (
    ConfigurationError,
    HTTPError,
    NetworkError,
    RateLimitExceeded,
    RequestTimeoutError,
)


logger = logging.getLogger(__name__)


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _response_body(response: httpx.Response) -> dict | str | None:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class BaseClient(ABC):
    """
    Abstract base class for building resilient HTTP API clients.

    This class provides a foundation for creating async HTTP clients with
    built-in support for:
    - Several interchangeable base URLs, one picked per attempt
    - Shared, explicitly constructed rate limiters
    - Retry with exponential backoff for transient failures
    - Proxy configuration
    - Proper resource cleanup

    Attributes:
        BASE_URLS (tuple[str, ...]): Default base URLs. Should be overridden
                       by subclasses or via constructor.
        client (httpx.AsyncClient): The underlying httpx async client.

    Example:
        >>> class MyAPIClient(BaseClient):
        ...     BASE_URLS = ("https://api1.example.com", "https://api2.example.com")
        ...
        ...     async def get_user(self, user_id: int):
        ...         return await self._fetch("GET", f"/users/{user_id}")
        ...
        >>> async with MyAPIClient(retry_config=RetryConfig(max_retries=5)) as client:
        ...     user = await client.get_user(123)
    """

    BASE_URLS: tuple[str, ...] = ("https://api.example.com",)

    def __init__(
        self,
        base_urls: list[str] | tuple[str, ...] | None = None,
        proxy: str | None = None,
        timeout: float = 30.0,
        retry_config: RetryConfig | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        endpoint_limiter: EndpointRateLimiter | None = None,
        **kwargs: Any,
    ):
        """
        Initialize the base client.

        Args:
            base_urls: Base URLs overriding the class BASE_URLS attribute.
            proxy: Proxy URL in format "host:port" or "http://host:port".
            timeout: Request timeout in seconds. Defaults to 30.0.
            retry_config: Backoff parameters for transient failures.
            rate_limiter: Global limiter shared by every request of this client.
            endpoint_limiter: Per-endpoint limiter keyed by URL path.
            **kwargs: Additional arguments passed to httpx.AsyncClient
                     (headers, verify, transport, ...).

        Raises:
            ConfigurationError: If proxy format or base URLs are invalid.
        """
        self.base_urls = tuple(base_urls or self.BASE_URLS)
        if not self.base_urls:
            raise ConfigurationError("At least one base URL is required")

        self.proxy = proxy
        self.retry_config = retry_config or RetryConfig()
        self.rate_limiter = rate_limiter
        self.endpoint_limiter = endpoint_limiter
        self._last_base_url: str | None = None

        if self.proxy is not None:
            if not isinstance(self.proxy, str):
                raise ConfigurationError(f"Invalid proxy configuration: {self.proxy!r}")
            proxy_url = (
                self.proxy if self.proxy.startswith("http") else f"http://{self.proxy}"
            )
            kwargs["proxy"] = proxy_url
            logger.debug(f"Proxy configured: {proxy_url}")

        if "timeout" not in kwargs:
            kwargs["timeout"] = timeout

        self.client = httpx.AsyncClient(**kwargs)
        self.client.headers.update({"Accept": "application/json"})

        logger.info(f"Client initialized with {len(self.base_urls)} base URL(s)")

    def _next_base_url(self) -> str:
        """Pick a base URL at random, avoiding the one used last when possible."""
        candidates = [url for url in self.base_urls if url != self._last_base_url]
        base_url = random.choice(candidates or list(self.base_urls))
        self._last_base_url = base_url
        return base_url

    @property
    def current_base_url(self) -> str | None:
        return self._last_base_url

    async def _throttle(self, endpoint_key: str) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.wait_if_needed()
        if self.endpoint_limiter is not None:
            await self.endpoint_limiter.wait_for(endpoint_key)

    async def _send(
        self,
        method: str,
        endpoint: str = "",
        params: dict[str, Any] | None = None,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Perform an HTTP request through the resilience pipeline.

        Transient failures (network errors, timeouts, 429/5xx) are retried
        according to `retry_config`; any other response is returned as is,
        including 4xx, so callers can map statuses to domain errors.

        Args:
            method: HTTP method.
            endpoint: Path appended to a base URL, or an absolute URL.
            params: Query parameters.
            payload: JSON body.
            headers: Extra headers for this request.

        Returns:
            The httpx response.

        Raises:
            NetworkError: Transport failure after retries were exhausted.
            RateLimitExceeded: Server kept answering 429.
            HTTPError: Server kept answering 5xx.
        """
        absolute = endpoint.startswith(("http://", "https://"))
        endpoint_key = urlparse(endpoint).path if absolute else endpoint.split("?")[0]

        async def attempt() -> httpx.Response:
            await self._throttle(endpoint_key)
            url = endpoint if absolute else f"{self._next_base_url()}{endpoint}"

            try:
                logger.debug(f"{method} {url}")
                response = await self.client.request(
                    method, url, params=params, json=payload, headers=headers, **kwargs
                )
            except httpx.TimeoutException as e:
                logger.warning(f"Request timeout: {method} {url}: {e}")
                raise RequestTimeoutError(f"Request timed out: {e}", url=url) from e
            except httpx.TransportError as e:
                logger.warning(f"Network error: {method} {url}: {e}")
                raise NetworkError(f"Request failed: {e}", url=url) from e

            logger.debug(f"Response status: {response.status_code}")

            if response.status_code == 429:
                raise RateLimitExceeded(
                    f"Rate limited by {url}",
                    retry_after=_parse_retry_after(response),
                    response_body=_response_body(response),
                )
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise HTTPError(
                    f"Request failed with status {response.status_code}",
                    status_code=response.status_code,
                    response_body=_response_body(response),
                )
            return response

        return await run_with_retry(attempt, self.retry_config)

    async def _fetch(
        self,
        method: str,
        endpoint: str = "",
        params: dict[str, Any] | None = None,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Perform an HTTP request and return the parsed JSON response.

        Raises:
            HTTPError: If the final response has an error status code.
        """
        response = await self._send(
            method, endpoint, params=params, payload=payload, headers=headers, **kwargs
        )
        return self.parse_json(response)

    @staticmethod
    def parse_json(response: httpx.Response) -> Any:
        if response.is_error:
            logger.error(f"HTTP error {response.status_code} for {response.url}")
            raise HTTPError(
                f"Request failed with status {response.status_code}",
                status_code=response.status_code,
                response_body=_response_body(response),
            )
        try:
            return response.json()
        except ValueError as e:
            raise HTTPError(
                f"Invalid JSON response: {e}",
                status_code=response.status_code,
                response_body=response.text,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self.client.aclose()
        logger.info("Client closed")

    async def __aenter__(self):
        """Enable use as async context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Ensure client is closed when exiting context."""
        await self.close()
