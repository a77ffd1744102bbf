"""
Custom exceptions for the shared client layer.

Every client built on BaseClient raises subclasses of ClientError, so
callers can catch one root type while still being able to tell transport
failures (NetworkError), server rejections (HTTPError) and throttling
(RateLimitExceeded) apart. The retry layer classifies these types.
"""


class ClientError(Exception):
    """Base exception for all client errors."""

    def __init__(self, message: str, *args, **kwargs):
        super().__init__(message, *args)
        self.message = message
        self.details = kwargs


class HTTPError(ClientError):
    """Raised when the server answers with an error status code."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict | str | None = None,
        **kwargs,
    ):
        super().__init__(
            message, status_code=status_code, response_body=response_body, **kwargs
        )
        self.status_code = status_code
        self.response_body = response_body


class RateLimitExceeded(HTTPError):
    """
    Raised when a request is throttled, either locally or by the server (429).

    `retry_after` is the number of seconds the caller should back off, when known.
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = 429,
        response_body: dict | str | None = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            response_body=response_body,
            retry_after=retry_after,
        )
        self.retry_after = retry_after


class NetworkError(ClientError):
    """Raised when the request never got a response (DNS, connect, TLS, reset)."""

    pass


class RequestTimeoutError(NetworkError):
    """Raised when a request times out."""

    pass


class ConfigurationError(ClientError):
    """Raised when there's an issue with client configuration."""

    pass
