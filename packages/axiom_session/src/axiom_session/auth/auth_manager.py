"""
# Axiom Trade Authentication Manager

Owns the authenticated session and drives the two-phase login handshake.

## Login flow:
```
UNAUTHENTICATED --login_phase1--> AWAITING_OTP --login_phase2--> AUTHENTICATED
AUTHENTICATED --refresh--> REFRESHING --> AUTHENTICATED | UNAUTHENTICATED
```

1. `login_phase1`: email + hashed password, server emails an OTP and
   answers with an OTP challenge token
2. `resolve_otp`: the configured `OtpResolver` supplies the code
3. `login_phase2`: challenge + OTP + credentials, server answers with tokens
   (cookies or JSON), user info and the custodial wallet session

Every request goes through `BaseClient`: global and per-endpoint rate
limits, a random API host per attempt, and retry with backoff for transient
failures.

## Example:
```python
store = SessionStore(SessionStorage("~/.axiomtradeapi/session.json"))
resolver = ChainedOtpResolver(EmailOtpResolver(from_env()), ManualOtpResolver(prompt=input))

async with AuthManager(store, email="user@example.com", password="...", otp_resolver=resolver) as auth:
    await auth.ensure_authenticated()
    response = await auth.authenticated_request("GET", "/portfolio-v5")
```
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

import httpx

from shared_lib.baseclient import Client as BaseClient
from shared_lib.resilience import EndpointRateLimiter, RetryConfig, SlidingWindowRateLimiter
from shared_lib.exceptions import ClientError, HTTPError
from shared_lib.utils.date import utc_now

from axiom_session.crypto import P256KeyPair, hash_password, recreate_keypair
from axiom_session.exceptions import (
    InvalidCredentialsError,
    InvalidOtpError,
    KeyDerivationError,
    NotAuthenticatedError,
    OtpRequiredError,
    TokenExpiredError,
    TokenNotFoundError,
    UnauthorizedError,
)
from axiom_session.urls import ORIGIN, AAllBaseUrls, AxiomTradeApiUrls
from axiom_session.user_agents import get_random_desktop_user_agent

from .models import (
    ACCESS_TOKEN_COOKIE,
    OTP_LOGIN_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    AuthCookies,
    AuthTokens,
    LoginResult,
    TurnkeySession,
    UserInfo,
)
from .otp_resolver import ManualOtpResolver, OtpResolver
from .session_store import SessionStore


# Lifetime assumed for access tokens when the server does not declare one
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)
DEFAULT_MAX_OTP_ATTEMPTS = 3
# Statuses meaning "your credentials/code/token are wrong", never retried
REJECTED_STATUS_CODES = frozenset({400, 401, 403})


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_OTP = "awaiting_otp"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _status_error(response: httpx.Response, action: str) -> HTTPError:
    return HTTPError(
        f"{action} failed with status {response.status_code}",
        status_code=response.status_code,
        response_body=_json_body(response) or response.text,
    )


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _expiry_from(data: Mapping[str, Any]) -> datetime:
    expires_in = data.get("expiresIn") or data.get("expires_in")
    try:
        if expires_in:
            return utc_now() + timedelta(seconds=float(expires_in))
    except (TypeError, ValueError):
        pass
    return utc_now() + DEFAULT_TOKEN_LIFETIME


class AuthManager(BaseClient):
    """
    # Authentication Manager

    ## Args:
    - `session_store` (SessionStore): Shared session owner, also used by the
      websocket client
    - `email` / `password` (str, optional): Credentials for (re-)login. The
      plaintext password is hashed on first use and only the hash is kept.
    - `otp_resolver` (OtpResolver, optional): OTP strategy; without one,
      `login` needs an explicit `otp_code` or raises `OtpRequiredError`
    - `max_otp_attempts` (int): Phase 2 attempts before `InvalidOtpError`
      propagates
    - `retry_config`, `rate_limiter`, `endpoint_limiter`: Resilience layer,
      shared with the rest of the client
    - `**kwargs`: Forwarded to `BaseClient` / `httpx.AsyncClient`

    ## Concurrency:
    - At most one refresh is in flight; concurrent callers await the same task
    - Concurrent logins coalesce on a lock and re-check the session first
    """

    BASE_URLS = AAllBaseUrls.API_SERVERS

    def __init__(
        self,
        session_store: SessionStore | None = None,
        email: str | None = None,
        password: str | None = None,
        otp_resolver: OtpResolver | None = None,
        max_otp_attempts: int = DEFAULT_MAX_OTP_ATTEMPTS,
        retry_config: RetryConfig | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        endpoint_limiter: EndpointRateLimiter | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            retry_config=retry_config,
            rate_limiter=rate_limiter,
            endpoint_limiter=endpoint_limiter,
            **kwargs,
        )
        self.logger = logging.getLogger(__name__)
        self.session_store = session_store or SessionStore()
        self.otp_resolver = otp_resolver
        self.max_otp_attempts = max(1, max_otp_attempts)

        self.email = email
        self._password = password
        self._hashed_password: str | None = None
        self._pending_tokens: tuple[str, str] | None = None

        self._login_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

        self.client.headers.update(
            {
                "Accept": "application/json, text/plain, */*",
                "Origin": ORIGIN,
                "Referer": f"{ORIGIN}/",
                "User-Agent": self._user_agent(),
            }
        )

        if self.session_store.get_tokens() is None:
            self._state = AuthState.UNAUTHENTICATED
        else:
            self._state = AuthState.AUTHENTICATED
            self.logger.info("Initialized with existing session")

    # State

    @property
    def state(self) -> AuthState:
        if self._state == AuthState.AUTHENTICATED and self.session_store.is_expired():
            return AuthState.EXPIRED
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self.session_store.is_session_valid()

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and (self._hashed_password or self._password))

    def _user_agent(self) -> str:
        session = self.session_store.get_session()
        if session is not None:
            return session.session_metadata.user_agent
        return get_random_desktop_user_agent()

    async def _get_hashed_password(self) -> str:
        if self._hashed_password is None:
            if not self._password:
                raise NotAuthenticatedError("No password available for login")
            # PBKDF2 with 600k iterations would stall the event loop
            self._hashed_password = await asyncio.to_thread(hash_password, self._password)
            self._password = None
        return self._hashed_password

    def seed_tokens(self, access_token: str, refresh_token: str) -> None:
        """
        Queue tokens to install on the next `ensure_authenticated()` call.

        Ignored when a session already exists by then, so a saved session
        wins over configured tokens.
        """
        self._pending_tokens = (access_token, refresh_token)

    async def install_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None = None,
    ) -> None:
        """
        Seed the session with externally obtained tokens.

        Without `expires_at` the tokens are never treated as expired; a 401
        from the server still triggers a refresh.
        """
        tokens = AuthTokens(
            access_token=access_token, refresh_token=refresh_token, expires_at=expires_at
        )
        await self.session_store.create_session(tokens)
        self._state = AuthState.AUTHENTICATED
        self.logger.info("Initialized with provided authentication tokens")

    # Two-phase login

    async def login_phase1(self, email: str, hashed_password: str) -> str:
        """
        Send the credentials and obtain the OTP challenge token.

        The server emails an OTP code to the account address.

        ## Args:
        - `email` (str): Account email
        - `hashed_password` (str): Output of `hash_password`

        ## Returns:
        - `str`: OTP challenge token (`otpJwtToken`) for `login_phase2`

        ## Raises:
        - `InvalidCredentialsError`: Server rejected the credentials (no retry)
        - `TokenNotFoundError`: Response carried no challenge token
        - `NetworkError` / `HTTPError`: Transient failures, retries exhausted
        """
        self.logger.info(f"Login step 1: sending credentials for {email}")
        response = await self._send(
            "POST",
            AxiomTradeApiUrls.LOGIN_STEP1,
            payload={"email": email, "b64Password": hashed_password},
            headers={"Content-Type": "application/json"},
        )

        if response.is_error:
            self._state = AuthState.UNAUTHENTICATED
            self.logger.error(f"❌ Login step 1 failed - Status: {response.status_code}")
            if response.status_code in REJECTED_STATUS_CODES:
                raise InvalidCredentialsError(
                    f"Login rejected with status {response.status_code}",
                    status_code=response.status_code,
                )
            raise _status_error(response, "Login step 1")

        challenge = _json_body(response).get("otpJwtToken")
        if not challenge:
            self._state = AuthState.UNAUTHENTICATED
            raise TokenNotFoundError("No OTP challenge token in login response")

        self._state = AuthState.AWAITING_OTP
        self.logger.info("✅ Login step 1 complete, OTP sent by email")
        return challenge

    async def resolve_otp(self, challenge: str) -> str:
        """
        Ask the configured resolver for the OTP code.

        ## Raises:
        - `OtpRequiredError`: No resolver configured; the error carries the
          challenge so the caller can call `login_phase2` with a code
        - `EmailError`: The resolver could not fetch the code
        """
        if self.otp_resolver is None:
            raise OtpRequiredError("OTP code required to complete login", challenge=challenge)
        return await self.otp_resolver.resolve(challenge)

    async def login_phase2(
        self, challenge: str, otp: str, email: str, hashed_password: str
    ) -> LoginResult:
        """
        Submit the OTP and install the resulting session.

        ## Token extraction:
        Tokens are read from the `Set-Cookie` headers first, falling back to
        the JSON `accessToken` / `refreshToken` fields.

        ## Returns:
        - `LoginResult`: tokens, custodial session and user info

        ## Raises:
        - `InvalidOtpError`: Wrong or expired code
        - `TokenNotFoundError`: Success status but no tokens in the response
        - `HTTPError`: Any other error status
        """
        self.logger.info("Login step 2: verifying OTP code")
        response = await self._send(
            "POST",
            AxiomTradeApiUrls.LOGIN_STEP2,
            payload={"code": otp, "email": email, "b64Password": hashed_password},
            headers={
                "Content-Type": "application/json",
                "Cookie": f"{OTP_LOGIN_TOKEN_COOKIE}={challenge}",
            },
        )

        if response.is_error:
            self.logger.error(f"❌ Login step 2 failed - Status: {response.status_code}")
            if response.status_code in REJECTED_STATUS_CODES:
                raise InvalidOtpError(
                    f"OTP rejected with status {response.status_code}",
                    status_code=response.status_code,
                )
            self._state = AuthState.UNAUTHENTICATED
            raise _status_error(response, "Login step 2")

        data = _json_body(response)
        access_token = response.cookies.get(ACCESS_TOKEN_COOKIE) or _first(
            data, "accessToken", ACCESS_TOKEN_COOKIE
        )
        refresh_token = response.cookies.get(REFRESH_TOKEN_COOKIE) or _first(
            data, "refreshToken", REFRESH_TOKEN_COOKIE
        )
        if not (access_token and refresh_token):
            self._state = AuthState.UNAUTHENTICATED
            self.logger.error("❌ No authentication tokens found in response")
            raise TokenNotFoundError("No authentication tokens in login response")

        tokens = AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_expiry_from(data),
        )
        user_data = data.get("user")
        user_info = UserInfo.model_validate(user_data) if isinstance(user_data, dict) else None
        turnkey_session = TurnkeySession.from_login_response(data)
        cookies = AuthCookies.from_cookies(response.cookies).merge_with(
            AuthCookies.from_tokens(tokens)
        )

        await self.session_store.create_session(
            tokens, user_info=user_info, cookies=cookies, turnkey_session=turnkey_session
        )
        self._state = AuthState.AUTHENTICATED
        self.logger.info("✅ Authentication successful!")
        return LoginResult(tokens=tokens, turnkey_session=turnkey_session, user_info=user_info)

    async def login(
        self,
        email: str | None = None,
        password: str | None = None,
        otp_code: str | None = None,
    ) -> LoginResult:
        """
        Run the complete login: hash, phase 1, resolve OTP, phase 2.

        Credentials passed here replace the remembered ones. An `otp_code`
        is used for the first attempt; later attempts (after
        `InvalidOtpError`) go back to the resolver.

        ## Raises:
        - `NotAuthenticatedError`: No credentials available
        - `InvalidCredentialsError`, `OtpRequiredError`, `EmailError`
        - `InvalidOtpError`: After `max_otp_attempts` rejected codes
        """
        if email:
            self.email = email
        if password:
            self._password = password
            self._hashed_password = None
        if not self.email:
            raise NotAuthenticatedError("Email and password required for authentication")

        async with self._login_lock:
            return await self._run_login(otp_code)

    async def _run_login(self, otp_code: str | None = None) -> LoginResult:
        # Caller holds _login_lock
        hashed_password = await self._get_hashed_password()
        self.logger.info("Starting Axiom Trade authentication flow...")
        challenge = await self.login_phase1(self.email, hashed_password)

        resolver = self.otp_resolver
        if otp_code:
            resolver = ManualOtpResolver(code=otp_code)

        for attempt in range(1, self.max_otp_attempts + 1):
            if resolver is None:
                raise OtpRequiredError(
                    "OTP code required to complete login", challenge=challenge
                )
            otp = await resolver.resolve(challenge)
            try:
                return await self.login_phase2(challenge, otp, self.email, hashed_password)
            except InvalidOtpError:
                if attempt >= self.max_otp_attempts:
                    raise
                self.logger.warning(
                    f"OTP rejected, attempt {attempt}/{self.max_otp_attempts}"
                )
                resolver = self.otp_resolver

        raise InvalidOtpError("OTP attempts exhausted")

    async def _login_if_needed(self) -> AuthTokens:
        async with self._login_lock:
            # Another task may have logged in while this one waited
            tokens = self.session_store.get_tokens()
            if tokens is not None and not tokens.is_expired:
                return tokens
            if not self.has_credentials:
                raise NotAuthenticatedError("No valid session and no credentials to log in")
            result = await self._run_login()
            return result.tokens

    # Token lifecycle

    async def ensure_authenticated(self) -> AuthTokens:
        """
        Return valid tokens, logging in or refreshing as needed.

        ## Strategy:
        1. No session: full login (needs credentials)
        2. Expired: refresh; if the refresh token is rejected, log in again
        3. Needs refresh: refresh best effort; transient failures keep the
           still-valid tokens
        4. Otherwise: current tokens

        ## Raises:
        - `NotAuthenticatedError`: No session and no credentials
        - `TokenExpiredError`: Refresh rejected and no credentials to log in
        - Any terminal login error
        """
        if self._pending_tokens is not None:
            access_token, refresh_token = self._pending_tokens
            self._pending_tokens = None
            if self.session_store.get_tokens() is None:
                await self.install_tokens(access_token, refresh_token)

        tokens = self.session_store.get_tokens()

        if tokens is None:
            self.logger.info("No session available, logging in")
            return await self._login_if_needed()

        if tokens.is_expired:
            self.logger.info("Access token expired, refreshing")
            try:
                return await self.refresh()
            except TokenExpiredError:
                if not self.has_credentials:
                    raise
                self.logger.info("Refresh token rejected, logging in again")
                return await self._login_if_needed()

        if tokens.needs_refresh:
            try:
                return await self.refresh()
            except TokenExpiredError:
                if not self.has_credentials:
                    raise
                return await self._login_if_needed()
            except ClientError as e:
                self.logger.warning(f"Proactive refresh failed, keeping current token: {e}")
                return tokens

        return tokens

    async def refresh(self) -> AuthTokens:
        """
        Exchange the refresh token for a new access token.

        Single-flight: concurrent callers share one in-flight refresh, so a
        single-use refresh token is never presented twice.

        ## Raises:
        - `TokenNotFoundError`: No tokens to refresh
        - `TokenExpiredError`: Refresh token rejected (400/401/403); the
          session is cleared
        - `TokenNotFoundError`: Success status without an access token, session kept
        - `NetworkError` / `HTTPError`: Any other failure, session kept
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._do_refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _do_refresh(self) -> AuthTokens:
        tokens = self.session_store.get_tokens()
        if tokens is None:
            raise TokenNotFoundError("No refresh token available for token refresh")

        previous_state = self._state
        self._state = AuthState.REFRESHING
        self.logger.info("🔄 Refreshing authentication tokens...")

        try:
            response = await self._send(
                "POST",
                AxiomTradeApiUrls.REFRESH_TOKEN,
                headers={"Cookie": self.session_store.get_cookie_header()},
            )
        except BaseException:
            self._state = previous_state
            raise

        if response.status_code in REJECTED_STATUS_CODES:
            self.logger.error(
                f"❌ Token refresh failed - Status: {response.status_code}"
            )
            await self.session_store.clear_session()
            self._state = AuthState.UNAUTHENTICATED
            raise TokenExpiredError(
                f"Refresh token rejected with status {response.status_code}",
                status_code=response.status_code,
            )

        if response.is_error:
            # Only 400/401/403 invalidate the refresh token
            self._state = previous_state
            self.logger.error(f"❌ Token refresh failed - Status: {response.status_code}")
            raise _status_error(response, "Token refresh")

        data = _json_body(response)
        new_access_token = response.cookies.get(ACCESS_TOKEN_COOKIE) or _first(
            data, "accessToken", ACCESS_TOKEN_COOKIE, "access_token"
        )
        if not new_access_token:
            self._state = previous_state
            raise TokenNotFoundError("No access token in refresh response")

        # Keep the existing refresh token unless the server rotated it
        new_refresh_token = (
            response.cookies.get(REFRESH_TOKEN_COOKIE)
            or _first(data, "refreshToken", REFRESH_TOKEN_COOKIE, "refresh_token")
            or tokens.refresh_token
        )
        new_tokens = AuthTokens(
            access_token=new_access_token,
            refresh_token=new_refresh_token,
            expires_at=_expiry_from(data),
        )
        await self.session_store.update_tokens(new_tokens)
        await self.session_store.update_cookies(AuthCookies.from_cookies(response.cookies))
        self._state = AuthState.AUTHENTICATED
        self.logger.info("✅ Tokens refreshed successfully!")
        return new_tokens

    # Authenticated calls

    def get_authenticated_headers(self, tokens: AuthTokens | None = None) -> dict[str, str]:
        """Bearer, cookie and user agent headers for the current session."""
        tokens = tokens or self.session_store.get_tokens()
        if tokens is None:
            raise NotAuthenticatedError("No valid authentication available for headers")
        headers = {
            "Authorization": f"Bearer {tokens.access_token}",
            "User-Agent": self._user_agent(),
        }
        cookie_header = self.session_store.get_cookie_header()
        if cookie_header:
            headers["Cookie"] = cookie_header
        return headers

    async def authenticated_request(
        self,
        method: str,
        url: str,
        body: Any = None,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Make an authenticated, rate-limited, retried request.

        ## Args:
        - `method` (str): HTTP method
        - `url` (str): Path on a rotating API host, or an absolute URL
        - `body`: JSON body
        - `params` / `headers`: Extra query parameters and headers

        ## Returns:
        - `httpx.Response`: Any non-401 response, including other 4xx

        ## Raises:
        - `UnauthorizedError`: 401 again after one refresh-and-retry
        - `NotAuthenticatedError`, `TokenExpiredError`: No usable session
        - `NetworkError` / `HTTPError` / `RateLimitExceeded`: Retries exhausted
        """
        tokens = await self.ensure_authenticated()

        for attempt in range(2):
            request_headers = {**self.get_authenticated_headers(tokens), **(headers or {})}
            response = await self._send(
                method, url, params=params, payload=body, headers=request_headers
            )
            self.session_store.mark_api_call(self.current_base_url)

            if response.status_code != 401:
                return response

            if attempt == 0:
                self.logger.warning(f"401 from {url}, refreshing tokens and retrying once")
                tokens = await self.refresh()

        raise UnauthorizedError(f"Request to {url} unauthorized after token refresh")

    # Diagnostics and teardown

    def get_token_info(self) -> dict[str, Any]:
        """Diagnostic view of the current tokens; never exposes full secrets."""
        tokens = self.session_store.get_tokens()
        if tokens is None:
            return {"authenticated": False, "state": self.state.value}

        remaining = tokens.time_until_expiry()
        return {
            "authenticated": True,
            "state": self.state.value,
            "access_token_preview": tokens.access_token[:20] + "...",
            "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
            "issued_at": tokens.issued_at.isoformat(),
            "is_expired": tokens.is_expired,
            "needs_refresh": tokens.needs_refresh,
            "time_until_expiry": max(remaining.total_seconds(), 0) if remaining else None,
            "session": self.session_store.summary(),
        }

    def recreate_signing_key(self, password: str) -> P256KeyPair:
        """
        Recreate the custodial wallet signing key from the account password.

        ## Raises:
        - `KeyDerivationError`: No custodial session or invalid client secret
        """
        turnkey_session = self.session_store.get_turnkey_session()
        if turnkey_session is None:
            raise KeyDerivationError("No custodial session available")
        return recreate_keypair(password, turnkey_session.client_secret)

    async def logout(self) -> None:
        """Clear the session, the stored file and the remembered credentials."""
        await self.session_store.clear_session()
        self._hashed_password = None
        self._password = None
        self._state = AuthState.UNAUTHENTICATED
        self.logger.info("Logged out successfully - all authentication data cleared")

    async def close(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
        await super().close()
