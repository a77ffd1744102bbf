"""
# Session Records

Pydantic models for everything the authentication layer keeps about a
login: tokens, cookies, the custodial (Turnkey) wallet session, user info
and diagnostic metadata. `AuthSession` aggregates them into the single
record persisted to the session file.

All timestamps are timezone-aware UTC datetimes; naive values are read as UTC.
"""

from datetime import datetime, timedelta
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared_lib.utils.date import ensure_utc, minutes_since, utc_now

from axiom_session.user_agents import get_random_desktop_user_agent


# Token expiration buffers
# A token is treated as expired this long before its real expiry
TOKEN_EXPIRED_BUFFER = timedelta(minutes=5)
# Proactive refresh starts this long before expiry
TOKEN_REFRESH_BUFFER = timedelta(minutes=15)
# Custodial sessions are refreshed this long before expiry
TURNKEY_REFRESH_BUFFER = timedelta(hours=1)
TURNKEY_SESSION_LIFETIME = timedelta(days=30)

ACCESS_TOKEN_COOKIE = "auth-access-token"
REFRESH_TOKEN_COOKIE = "auth-refresh-token"
OTP_LOGIN_TOKEN_COOKIE = "auth-otp-login-token"
G_STATE_COOKIE = "g_state"
DEFAULT_G_STATE = '{"i_l":0}'


class SessionModel(BaseModel):
    """Base model for session records."""

    def __str__(self) -> str:
        return self.model_dump_json(indent=2)


class AuthTokens(SessionModel):
    """
    # Authentication Token Container

    Immutable pair of access/refresh tokens with expiry bookkeeping. Tokens
    are only ever replaced as a whole, never partially updated.

    ## Attributes:
    - `access_token` (str): JWT access token for API authentication
    - `refresh_token` (str): Long-lived token used to obtain new access tokens
    - `expires_at` (datetime, optional): Access token expiry; `None` means the
      lifetime is unknown and the token is never treated as expired
    - `issued_at` (datetime): When the tokens were obtained

    ## Example:
    ```python
    tokens = AuthTokens(
        access_token="eyJhbGc...",
        refresh_token="refresh_abc123",
        expires_at=utc_now() + timedelta(hours=1),
    )

    if tokens.needs_refresh:
        ...
    ```
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None
    issued_at: datetime = Field(default_factory=utc_now)

    @field_validator("expires_at", "issued_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @property
    def is_expired(self) -> bool:
        """
        True once `now >= expires_at - 5 minutes`.

        The buffer keeps a token from expiring in the middle of a request.
        """
        if self.expires_at is None:
            return False
        return utc_now() >= self.expires_at - TOKEN_EXPIRED_BUFFER

    @property
    def needs_refresh(self) -> bool:
        """True once `now >= expires_at - 15 minutes`."""
        if self.expires_at is None:
            return False
        return utc_now() >= self.expires_at - TOKEN_REFRESH_BUFFER

    def time_until_expiry(self) -> timedelta | None:
        if self.expires_at is None:
            return None
        return self.expires_at - utc_now()

    def __repr__(self) -> str:
        return (
            f"AuthTokens(access_token=<{len(self.access_token)} chars>, "
            f"expires_at={self.expires_at!r})"
        )


class AuthCookies(SessionModel):
    """
    HTTP cookies the Axiom web app sends along with the bearer token.

    Cookies are valid only when both auth cookies are present.
    """

    auth_access_token: str | None = None
    auth_refresh_token: str | None = None
    g_state: str | None = DEFAULT_G_STATE
    additional: dict[str, str] = Field(default_factory=dict)

    @property
    def has_auth_cookies(self) -> bool:
        return bool(self.auth_access_token and self.auth_refresh_token)

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "AuthCookies":
        return cls(
            auth_access_token=tokens.access_token,
            auth_refresh_token=tokens.refresh_token,
        )

    @classmethod
    def from_cookies(cls, cookies: Mapping[str, str]) -> "AuthCookies":
        """
        Build from a cookie mapping, e.g. an `httpx.Cookies` jar filled from
        `Set-Cookie` headers. Only cookies that are present are set.
        """
        values = dict(cookies.items())
        return cls(
            auth_access_token=values.pop(ACCESS_TOKEN_COOKIE, None),
            auth_refresh_token=values.pop(REFRESH_TOKEN_COOKIE, None),
            g_state=values.pop(G_STATE_COOKIE, None),
            additional=values,
        )

    def merge_with(self, other: "AuthCookies") -> "AuthCookies":
        """Return a copy where values set in `other` win."""
        return AuthCookies(
            auth_access_token=other.auth_access_token or self.auth_access_token,
            auth_refresh_token=other.auth_refresh_token or self.auth_refresh_token,
            g_state=other.g_state or self.g_state,
            additional={**self.additional, **other.additional},
        )

    def to_cookie_header(self) -> str:
        """Format as a `Cookie` header value: `name1=value1; name2=value2`."""
        pairs = []
        if self.g_state:
            pairs.append(f"{G_STATE_COOKIE}={self.g_state}")
        if self.auth_refresh_token:
            pairs.append(f"{REFRESH_TOKEN_COOKIE}={self.auth_refresh_token}")
        if self.auth_access_token:
            pairs.append(f"{ACCESS_TOKEN_COOKIE}={self.auth_access_token}")
        pairs.extend(f"{name}={value}" for name, value in self.additional.items())
        return "; ".join(pairs)


class TurnkeyApiKey(SessionModel):
    api_key_id: str
    api_key_name: str | None = None
    public_key: str
    created_at: datetime | None = None


class TurnkeySession(SessionModel):
    """
    Custodial wallet session.

    The signing key itself is never stored: `client_secret` is the salt
    that recreates it from the account password.
    """

    organization_id: str
    user_id: str
    username: str
    client_secret: str
    api_keys: list[TurnkeyApiKey] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    @field_validator("created_at", "expires_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @classmethod
    def from_login_response(cls, data: Mapping[str, Any]) -> "TurnkeySession | None":
        """Build from the `orgId`/`userId`/`clientSecret` login fields, if present."""
        organization_id = data.get("orgId")
        user_id = data.get("userId")
        client_secret = data.get("clientSecret")
        if not (organization_id and user_id and client_secret):
            return None

        now = utc_now()
        return cls(
            organization_id=organization_id,
            user_id=user_id,
            username=f"user_{user_id[:8]}",
            client_secret=client_secret,
            created_at=now,
            expires_at=now + TURNKEY_SESSION_LIFETIME,
        )

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and utc_now() >= self.expires_at

    @property
    def needs_refresh(self) -> bool:
        if self.expires_at is None:
            return False
        return utc_now() >= self.expires_at - TURNKEY_REFRESH_BUFFER


class UserInfo(SessionModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    email: str | None = None
    username: str | None = None


class SessionMetadata(SessionModel):
    """Diagnostic bookkeeping, not used for correctness."""

    created_at: datetime = Field(default_factory=utc_now)
    last_refreshed_at: datetime | None = None
    last_api_call_at: datetime | None = None
    current_api_server: str | None = None
    user_agent: str = Field(default_factory=get_random_desktop_user_agent)
    ip_address: str | None = None
    client_fingerprint: str | None = None

    @field_validator("created_at", "last_refreshed_at", "last_api_call_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def session_age_minutes(self) -> float:
        return minutes_since(self.created_at)

    def minutes_since_last_api_call(self) -> float | None:
        if self.last_api_call_at is None:
            return None
        return minutes_since(self.last_api_call_at)


class AuthSession(SessionModel):
    """
    # Authenticated Session

    The persisted unit: tokens, cookies, optional custodial session, optional
    user info and metadata.
    """

    tokens: AuthTokens
    cookies: AuthCookies = Field(default_factory=AuthCookies)
    turnkey_session: TurnkeySession | None = None
    user_info: UserInfo | None = None
    session_metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    def is_valid(self) -> bool:
        """Valid while the tokens are not expired; cookies are informative."""
        return not self.tokens.is_expired

    def needs_refresh(self) -> bool:
        return self.tokens.needs_refresh

    def cookie_header(self) -> str:
        # The token pair is authoritative over whatever the cookie jar last held
        return self.cookies.model_copy(
            update={
                "auth_access_token": self.tokens.access_token,
                "auth_refresh_token": self.tokens.refresh_token,
            }
        ).to_cookie_header()

    def summary(self) -> str:
        if self.tokens.is_expired:
            status = "EXPIRED"
        elif self.tokens.needs_refresh:
            status = "NEEDS_REFRESH"
        else:
            status = "VALID"

        metadata = self.session_metadata
        parts = [
            f"Session {status}",
            f"age={metadata.session_age_minutes():.0f}m",
        ]
        remaining = self.tokens.time_until_expiry()
        if remaining is not None:
            parts.append(f"expires_in={remaining.total_seconds() / 60:.0f}m")
        if metadata.current_api_server:
            parts.append(f"server={metadata.current_api_server}")
        if self.user_info and self.user_info.email:
            parts.append(f"user={self.user_info.email}")
        parts.append(f"turnkey={'yes' if self.turnkey_session else 'no'}")
        return ", ".join(parts)


class LoginResult(SessionModel):
    tokens: AuthTokens
    turnkey_session: TurnkeySession | None = None
    user_info: UserInfo | None = None
