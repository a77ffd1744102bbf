"""
Thread-safe holder for the current access/refresh token pair.

The lock is held only for the in-memory swap. Persistence runs in a worker
thread after the lock is released, so no caller ever waits on disk I/O
while holding it.
"""

import asyncio
import logging
import threading

from pydantic import ValidationError

from axiom_session.exceptions import SessionPersistenceError

from .models import AuthTokens
from .storage import SessionStorage


logger = logging.getLogger(__name__)


class TokenStore:
    """
    Holds `AuthTokens` with optional persistence.

    ## Args:
    - `storage` (SessionStorage, optional): Backing file; in-memory only if omitted
    - `auto_save` (bool): Persist on every `set`. Otherwise call `save()`.

    Loading on construction is best effort: a missing or corrupt file means
    "no tokens".
    """

    def __init__(
        self, storage: SessionStorage | None = None, auto_save: bool = True
    ) -> None:
        self.storage = storage
        self.auto_save = auto_save
        self._lock = threading.Lock()
        self._tokens: AuthTokens | None = None

        if storage is not None:
            self._tokens = self._read()

    def _read(self) -> AuthTokens | None:
        try:
            record = self.storage.load()
        except SessionPersistenceError as e:
            logger.warning(f"Ignoring unreadable token file: {e}")
            return None
        if record is None:
            return None
        try:
            return AuthTokens.model_validate(record.get("tokens", record))
        except ValidationError as e:
            logger.warning(f"Ignoring invalid token file: {e.error_count()} error(s)")
            return None

    def get(self) -> AuthTokens | None:
        with self._lock:
            return self._tokens

    def has_tokens(self) -> bool:
        return self.get() is not None

    def is_expired(self) -> bool:
        """True when there are no tokens or they are inside the expiry buffer."""
        tokens = self.get()
        return tokens is None or tokens.is_expired

    def needs_refresh(self) -> bool:
        tokens = self.get()
        return tokens is None or tokens.needs_refresh

    async def set(self, tokens: AuthTokens) -> None:
        with self._lock:
            self._tokens = tokens
        if self.auto_save:
            await self._save_quietly()

    def restore(self, tokens: AuthTokens | None) -> None:
        """Install tokens read from elsewhere without persisting them."""
        with self._lock:
            self._tokens = tokens

    async def clear(self) -> None:
        with self._lock:
            self._tokens = None
        if self.storage is not None:
            try:
                await asyncio.to_thread(self.storage.delete)
            except SessionPersistenceError as e:
                logger.warning(f"Could not delete token file: {e}")

    async def save(self) -> None:
        """
        Persist the current tokens.

        ## Raises:
        - `SessionPersistenceError`: If the file cannot be written
        """
        if self.storage is None:
            return
        tokens = self.get()
        if tokens is None:
            return
        await asyncio.to_thread(
            self.storage.save, {"tokens": tokens.model_dump(mode="json")}
        )

    async def _save_quietly(self) -> None:
        try:
            await self.save()
        except SessionPersistenceError as e:
            logger.warning(f"Token persistence unavailable: {e}")
