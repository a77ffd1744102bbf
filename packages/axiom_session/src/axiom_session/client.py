"""# Axiom Trade Client

Main entry point: one object wiring settings, session persistence, OTP
resolution, rate limiting and the authentication manager together.

## Basic Usage

```python
from axiom_session import AxiomClient

async with AxiomClient.from_env() as client:
    await client.ensure_authenticated()
    portfolio = await client.post_json("/portfolio-v5", {"walletAddressRaw": "..."})
    print(client.session_summary())
```

### Manual OTP

```python
client = AxiomClient(AxiomSettings(email="user@example.com", password="..."))
try:
    await client.login()
except OtpRequiredError:
    await client.login(otp_code=input("OTP: "))
```

### WebSocket Streaming

```python
ws = client.websocket(Region.EU_WEST)
await ws.connect()
await ws.subscribe_new_tokens(lambda data: print(f"New token: {data}"))
await ws.run()
```
"""

import logging
from pathlib import Path
from typing import Any

import httpx

from shared_lib.logging import setup_logging
from shared_lib.resilience import EndpointRateLimiter, RetryConfig, SlidingWindowRateLimiter

from axiom_session import config
from axiom_session.auth.auth_manager import AuthManager
from axiom_session.auth.models import AuthTokens, LoginResult
from axiom_session.auth.otp_resolver import EmailOtpResolver, OtpResolver
from axiom_session.auth.session_store import SessionStore
from axiom_session.auth.storage import SessionStorage
from axiom_session.config import AxiomSettings
from axiom_session.email.otp_fetcher import OtpFetcher
from axiom_session.urls import Region
from axiom_session.websocket import AxiomWebSocketClient, MessageHandler


logger = logging.getLogger(__name__)


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


class AxiomClient:
    """
    # Axiom Trade Client

    ## Args:
    - `settings` (AxiomSettings, optional): Defaults to `AxiomSettings()`
    - `otp_resolver` (OtpResolver, optional): Overrides the mailbox resolver
      built from the settings
    - `session_store` (SessionStore, optional): Overrides the store built from
      the settings, e.g. to share one between clients
    - `retry_config` (RetryConfig, optional): Backoff for transient failures
    - `**http_kwargs`: Forwarded to `httpx.AsyncClient`

    Tokens from the settings (`AXIOM_ACCESS_TOKEN` / `AXIOM_REFRESH_TOKEN`)
    seed the session on first use, REST or websocket, when no session was
    loaded from disk.
    """

    def __init__(
        self,
        settings: AxiomSettings | None = None,
        *,
        otp_resolver: OtpResolver | None = None,
        session_store: SessionStore | None = None,
        retry_config: RetryConfig | None = None,
        **http_kwargs: Any,
    ) -> None:
        self.settings = settings or AxiomSettings()

        if session_store is None:
            storage = SessionStorage(
                self.settings.session_path, encrypt=self.settings.encrypt_session
            )
            session_store = SessionStore(storage, auto_save=self.settings.auto_save)
        self.session_store = session_store

        self.rate_limiter = SlidingWindowRateLimiter(
            self.settings.global_max_requests, self.settings.global_window_seconds
        )
        self.endpoint_limiter = EndpointRateLimiter(
            self.settings.endpoint_max_requests, self.settings.endpoint_window_seconds
        )

        self.auth = AuthManager(
            self.session_store,
            email=self.settings.email,
            password=_secret(self.settings.password),
            otp_resolver=otp_resolver or self._build_otp_resolver(),
            retry_config=retry_config,
            rate_limiter=self.rate_limiter,
            endpoint_limiter=self.endpoint_limiter,
            **http_kwargs,
        )
        self._websockets: list[AxiomWebSocketClient] = []
        if self.settings.has_tokens:
            self.auth.seed_tokens(
                _secret(self.settings.access_token), _secret(self.settings.refresh_token)
            )

    @classmethod
    def from_env(
        cls,
        env_file: str | Path | None = None,
        configure_logging: bool = False,
        **kwargs: Any,
    ) -> "AxiomClient":
        """
        Build a client from environment variables (and `.env`).

        ## Raises:
        - `ConfigurationError`: If a variable has an invalid value
        """
        settings = config.from_env(env_file)
        if configure_logging:
            setup_logging(settings.log_level)
        return cls(settings, **kwargs)

    def _build_otp_resolver(self) -> OtpResolver | None:
        if not self.settings.has_otp_mailbox:
            return None
        fetcher = OtpFetcher(
            self.settings.otp_email, _secret(self.settings.otp_email_password)
        )
        return EmailOtpResolver(
            fetcher,
            timeout_seconds=self.settings.otp_timeout_seconds,
            poll_interval_seconds=self.settings.otp_poll_interval_seconds,
        )

    # Authentication

    @property
    def is_authenticated(self) -> bool:
        return self.auth.is_authenticated

    async def login(
        self,
        email: str | None = None,
        password: str | None = None,
        otp_code: str | None = None,
    ) -> LoginResult:
        return await self.auth.login(email=email, password=password, otp_code=otp_code)

    async def ensure_authenticated(self) -> AuthTokens:
        return await self.auth.ensure_authenticated()

    async def logout(self) -> None:
        await self.auth.logout()

    def session_summary(self) -> str:
        return self.session_store.summary()

    def get_token_info(self) -> dict[str, Any]:
        return self.auth.get_token_info()

    # REST

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Authenticated request; non-401 error statuses are returned as is."""
        return await self.auth.authenticated_request(
            method, path, body, params=params, headers=headers
        )

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET and parse JSON.

        ## Raises:
        - `RateLimitExceeded`: Still throttled after retries
        - `HTTPError`: Any other error status
        """
        response = await self.request("GET", path, params=params)
        return self.auth.parse_json(response)

    async def post_json(
        self, path: str, body: Any = None, params: dict[str, Any] | None = None
    ) -> Any:
        """POST a JSON body and parse the JSON answer; errors as `get_json`."""
        response = await self.request("POST", path, body, params=params)
        return self.auth.parse_json(response)

    # Streaming

    def websocket(
        self,
        region: Region | None = None,
        handler: MessageHandler | None = None,
        **kwargs: Any,
    ) -> AxiomWebSocketClient:
        """
        Create a websocket client sharing this client's session.

        It is disconnected by `close()`.
        """
        ws = AxiomWebSocketClient(
            self.auth, handler=handler, region=region or self.settings.region, **kwargs
        )
        self._websockets.append(ws)
        return ws

    async def close(self) -> None:
        for ws in self._websockets:
            await ws.disconnect()
        self._websockets.clear()
        await self.auth.close()

    async def __aenter__(self) -> "AxiomClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
