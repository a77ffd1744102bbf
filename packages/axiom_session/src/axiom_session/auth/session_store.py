"""
# Session Store

Single owner of the authenticated session: tokens, cookies, custodial
session, user info and metadata, optionally mirrored to a session file.

One instance is constructed by the caller and passed by reference to every
component that needs it (`AuthManager`, `AxiomWebSocketClient`). Reads and
writes serialize on an internal `threading.Lock` that is held only for the
in-memory update; file I/O happens afterwards in a worker thread.

## Example:
```python
store = SessionStore(SessionStorage("~/.axiomtradeapi/session.json"))

if store.is_session_valid():
    tokens = store.get_tokens()

await store.create_session(tokens, user_info=user, cookies=cookies)
store.mark_api_call("https://api6.axiom.trade")
print(store.summary())
```
"""

import asyncio
import logging
import threading

from pydantic import ValidationError

from shared_lib.utils.date import utc_now

from axiom_session.exceptions import SessionPersistenceError

from .models import AuthCookies, AuthSession, AuthTokens, TurnkeySession, UserInfo
from .storage import SessionStorage
from .token_store import TokenStore


logger = logging.getLogger(__name__)


class SessionStore:
    """
    Session Store, a superset of `TokenStore`.

    ## Args:
    - `storage` (SessionStorage, optional): Backing file; in-memory only if omitted
    - `auto_save` (bool): Persist after every mutation. Otherwise call `save()`.

    ## Invariants:
    - The session is replaced or updated under the lock, never across I/O
    - Tokens live in the composed `TokenStore`; the session record always
      mirrors them
    - A missing or corrupt session file on construction means "no session"
    """

    def __init__(
        self, storage: SessionStorage | None = None, auto_save: bool = True
    ) -> None:
        self.storage = storage
        self.auto_save = auto_save
        self._lock = threading.Lock()
        self._session: AuthSession | None = None
        # In-memory only, the session record is what gets persisted
        self.token_store = TokenStore(auto_save=False)

        if storage is not None:
            session = self._read()
            if session is not None:
                self._session = session
                self.token_store.restore(session.tokens)
                logger.info(f"✅ Loaded existing session: {session.summary()}")

    def _read(self) -> AuthSession | None:
        try:
            record = self.storage.load()
        except SessionPersistenceError as e:
            logger.warning(f"Ignoring unreadable session file: {e}")
            return None
        if record is None:
            return None
        try:
            return AuthSession.model_validate(record)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid session file: {e.error_count()} error(s)")
            return None

    async def load(self) -> AuthSession | None:
        """Reload the session from disk, replacing the in-memory one if found."""
        if self.storage is None:
            return self.get_session()
        session = await asyncio.to_thread(self._read)
        if session is not None:
            with self._lock:
                self._session = session
                self.token_store.restore(session.tokens)
        return session

    # Reads

    def get_session(self) -> AuthSession | None:
        with self._lock:
            return self._session

    def get_tokens(self) -> AuthTokens | None:
        return self.token_store.get()

    def get_cookies(self) -> AuthCookies | None:
        session = self.get_session()
        return session.cookies if session else None

    def get_turnkey_session(self) -> TurnkeySession | None:
        session = self.get_session()
        return session.turnkey_session if session else None

    def get_user_info(self) -> UserInfo | None:
        session = self.get_session()
        return session.user_info if session else None

    def get_cookie_header(self) -> str:
        session = self.get_session()
        return session.cookie_header() if session else ""

    def is_session_valid(self) -> bool:
        """True only if tokens are present and not expired."""
        return not self.token_store.is_expired()

    def is_expired(self) -> bool:
        return self.token_store.is_expired()

    def needs_refresh(self) -> bool:
        return self.token_store.needs_refresh()

    def summary(self) -> str:
        session = self.get_session()
        return session.summary() if session else "No active session"

    # Writes

    async def create_session(
        self,
        tokens: AuthTokens,
        user_info: UserInfo | None = None,
        cookies: AuthCookies | None = None,
        turnkey_session: TurnkeySession | None = None,
    ) -> AuthSession:
        """
        Atomically install a brand-new session, replacing any existing one.

        Cookies are merged over the defaults so the OAuth state cookie is
        always present.
        """
        session = AuthSession(
            tokens=tokens,
            cookies=AuthCookies().merge_with(cookies or AuthCookies.from_tokens(tokens)),
            turnkey_session=turnkey_session,
            user_info=user_info,
        )
        with self._lock:
            self._session = session
            self.token_store.restore(session.tokens)
        logger.info("✅ Session created")
        await self._autosave()
        return session

    async def set(self, tokens: AuthTokens) -> None:
        """`TokenStore` compatible alias of `update_tokens`."""
        await self.update_tokens(tokens)

    async def update_tokens(self, tokens: AuthTokens) -> None:
        """Replace the token pair, creating a session if none exists."""
        with self._lock:
            session = self._session
            if session is None:
                session = AuthSession(tokens=tokens, cookies=AuthCookies.from_tokens(tokens))
            else:
                metadata = session.session_metadata.model_copy(
                    update={"last_refreshed_at": utc_now()}
                )
                session = session.model_copy(
                    update={
                        "tokens": tokens,
                        "cookies": session.cookies.merge_with(
                            AuthCookies.from_tokens(tokens)
                        ),
                        "session_metadata": metadata,
                    }
                )
            self._session = session
            self.token_store.restore(tokens)
        await self._autosave()

    async def update_cookies(self, cookies: AuthCookies) -> None:
        """Merge `cookies` into the current session's cookie set."""
        with self._lock:
            if self._session is None:
                logger.debug("No session to update cookies on")
                return
            self._session = self._session.model_copy(
                update={"cookies": self._session.cookies.merge_with(cookies)}
            )
        await self._autosave()

    async def update_turnkey_session(self, turnkey_session: TurnkeySession | None) -> None:
        with self._lock:
            if self._session is None:
                return
            self._session = self._session.model_copy(
                update={"turnkey_session": turnkey_session}
            )
        await self._autosave()

    def mark_api_call(self, server: str | None = None) -> None:
        """Record an API call in the metadata. Not persisted on its own."""
        with self._lock:
            if self._session is None:
                return
            update: dict = {"last_api_call_at": utc_now()}
            if server:
                update["current_api_server"] = server
            metadata = self._session.session_metadata.model_copy(update=update)
            self._session = self._session.model_copy(
                update={"session_metadata": metadata}
            )

    async def clear(self) -> None:
        await self.clear_session()

    async def clear_session(self) -> None:
        """Wipe the in-memory session and delete the session file, if any."""
        with self._lock:
            self._session = None
            self.token_store.restore(None)

        if self.storage is not None:
            try:
                await asyncio.to_thread(self.storage.delete)
            except SessionPersistenceError as e:
                logger.warning(f"Could not delete session file: {e}")
        logger.info("Session cleared")

    async def save(self) -> None:
        """
        Persist the current session.

        ## Raises:
        - `SessionPersistenceError`: If the file cannot be written
        """
        if self.storage is None:
            return
        session = self.get_session()
        if session is None:
            return
        await asyncio.to_thread(self.storage.save, session.model_dump(mode="json"))

    async def _autosave(self) -> None:
        if not self.auto_save:
            return
        try:
            await self.save()
        except SessionPersistenceError as e:
            logger.warning(f"Session persistence unavailable: {e}")
