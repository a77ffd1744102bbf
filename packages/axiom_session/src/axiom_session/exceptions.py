"""
Error taxonomy for the Axiom Trade authentication and session layer.

## Hierarchy:
```
ClientError (shared_lib)
└── AuthError
    ├── InvalidCredentialsError   terminal, wrong email/password
    ├── OtpRequiredError          caller must supply an OTP
    ├── InvalidOtpError           wrong or expired OTP, bounded retry
    ├── TokenExpiredError         refresh token rejected, re-login needed
    ├── TokenNotFoundError        server answered without tokens
    ├── NotAuthenticatedError     no session and no credentials
    ├── UnauthorizedError         401 after a refresh-and-retry
    ├── KeyDerivationError        signing key derivation failed
    ├── EmailError                OTP retrieval failed
    │   ├── EmailAuthenticationError
    │   ├── EmailConnectionError
    │   └── OtpNotReceivedError
    └── StreamAuthError           websocket handshake rejected
SessionPersistenceError           session file unavailable, never fatal
├── SessionSerializationError
└── SessionIoError
StreamError
├── StreamConnectionError
├── NotConnectedError
├── ReconnectTimeoutError
└── StreamAuthError
```

Transient network and rate-limit errors come from `shared_lib.exceptions`
(`NetworkError`, `RateLimitExceeded`, `HTTPError`).
"""

from shared_lib.exceptions import ClientError


class AuthError(ClientError):
    """Base exception for authentication failures."""

    pass


class InvalidCredentialsError(AuthError):
    """Raised when the server rejects the email/password pair."""

    pass


class OtpRequiredError(AuthError):
    """
    Raised when an OTP is needed and no resolver could supply one.

    `challenge` holds the OTP challenge token from login phase 1 so the
    caller can finish the login with `AuthManager.login_phase2`.
    """

    def __init__(self, message: str, challenge: str | None = None):
        super().__init__(message)
        self.challenge = challenge


class InvalidOtpError(AuthError):
    """Raised when the server rejects the OTP code."""

    pass


class TokenExpiredError(AuthError):
    """Raised when the refresh token is rejected and a new login is required."""

    pass


class TokenNotFoundError(AuthError):
    """Raised when a response that should carry tokens does not."""

    pass


class NotAuthenticatedError(AuthError):
    """Raised when there is no session and no credentials to create one."""

    pass


class UnauthorizedError(AuthError):
    """Raised when a request is still rejected with 401 after a token refresh."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code


class KeyDerivationError(AuthError):
    """Raised when a signing keypair cannot be derived."""

    pass


class EmailError(AuthError):
    """Base exception for OTP email retrieval failures."""

    pass


class EmailAuthenticationError(EmailError):
    """Raised when the IMAP server rejects the mailbox credentials."""

    pass


class EmailConnectionError(EmailError):
    """Raised when the IMAP server cannot be reached or the session breaks."""

    pass


class OtpNotReceivedError(EmailError):
    """Raised when no OTP email arrived before the timeout."""

    pass


class SessionPersistenceError(ClientError):
    """Base exception for session file problems."""

    pass


class SessionSerializationError(SessionPersistenceError):
    """Raised when the session file cannot be encoded or decoded."""

    pass


class SessionIoError(SessionPersistenceError):
    """Raised when the session file cannot be read, written or deleted."""

    pass


class StreamError(ClientError):
    """Base exception for websocket streaming errors."""

    pass


class StreamConnectionError(StreamError):
    """Raised when the websocket cannot be (re)established."""

    pass


class NotConnectedError(StreamError):
    """Raised when an operation needs a live websocket connection."""

    pass


class ReconnectTimeoutError(StreamError):
    """Raised when reconnecting did not finish within the allowed time."""

    pass


class StreamAuthError(AuthError, StreamError):
    """Raised when the websocket cannot authenticate."""

    pass
