"""
# Axiom Trade WebSocket Client

Real-time stream client that stays connected across drops and token
refreshes.

## Key Features:
- **Authenticated Handshake**: Session cookies and user agent from `AuthManager`
- **Room Subscriptions**: `join`/`leave` messages, replayed in order after a
  reconnect
- **Automatic Reconnection**: Exponential backoff, auth failures are terminal
- **Token Upkeep**: A background task keeps the session fresh while connected
- **Binary Frames**: msgpack first, UTF-8 fallback

## Usage:
```python
async def on_new_pair(data):
    print(f"New pair: {data}")

async with AuthManager(store, email=..., password=...) as auth:
    ws = AxiomWebSocketClient(auth, region=Region.EU_WEST)
    await ws.connect()
    await ws.subscribe_new_tokens(on_new_pair)
    await ws.run()  # blocks until disconnect() or a terminal failure
```

## Connection states:
```
DISCONNECTED --connect--> CONNECTING --> CONNECTED
CONNECTED --drop--> RECONNECTING --> CONNECTED | DISCONNECTED
```
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import msgpack
import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from shared_lib.exceptions import ClientError

from axiom_session.auth.auth_manager import AuthManager
from axiom_session.auth.models import AuthTokens
from axiom_session.exceptions import (
    AuthError,
    NotConnectedError,
    ReconnectTimeoutError,
    StreamAuthError,
    StreamConnectionError,
    StreamError,
)
from axiom_session.urls import ORIGIN, Region

from .handler import LoggingMessageHandler, MessageHandler


logger = logging.getLogger(__name__)

# Room names
ROOM_NEW_PAIRS = "new_pairs"
ROOM_WALLET_PREFIX = "v:"

DEFAULT_REFRESH_INTERVAL = 600
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_OPEN_TIMEOUT = 30

AUTH_REJECTED_STATUS_CODES = frozenset({401, 403})

RoomCallback = Callable[[Any], Union[Awaitable[None], None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def _decode_message_content(content: Union[str, bytes]) -> Any:
    """
    Decode a WebSocket frame.

    Text frames are JSON. Binary frames are tried as msgpack first, then as
    UTF-8 text (parsed as JSON when possible).

    ## Raises:
    - `ValueError`: A text frame that is not valid JSON
    """
    if isinstance(content, str):
        return json.loads(content)

    try:
        return msgpack.unpackb(content, raw=False)
    except (ValueError, TypeError):
        text = content.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class AxiomWebSocketClient:
    """
    # Axiom Trade WebSocket Client

    ## Args:
    - `auth_manager` (AuthManager): Source of the session used in the handshake
    - `handler` (MessageHandler, optional): Event sink, `LoggingMessageHandler`
      by default
    - `region` (Region): Cluster to connect to, a host is picked at random
    - `refresh_interval` (float): Seconds between session checks while connected
    - `max_reconnect_attempts` (int): Attempts per `reconnect()`
    - `reconnect_delay` (float): Base delay; attempt n waits
      `reconnect_delay * 2 ** (n - 2)` from the second attempt on
    - `open_timeout` (float): Handshake timeout in seconds
    - `auto_reconnect` (bool): Reconnect on unexpected close
    - `url` (str, optional): Fixed URL overriding the region
    - `connector`: Coroutine function opening the connection,
      `websockets.connect` by default
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        handler: Optional[MessageHandler] = None,
        region: Region = Region.GLOBAL,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        auto_reconnect: bool = True,
        url: Optional[str] = None,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
    ) -> None:
        self.auth_manager = auth_manager
        self.handler = handler or LoggingMessageHandler()
        self.region = region
        self.refresh_interval = refresh_interval
        self.max_reconnect_attempts = max(1, max_reconnect_attempts)
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self.auto_reconnect = auto_reconnect
        self.url = url
        self._connector = connector

        self.ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        # Insertion order is the replay order
        self._subscriptions: Dict[str, Optional[RoomCallback]] = {}

        self._reader_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        # Bumped on every successful open; a close only acts on its own connection
        self._generation = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self.ws is not None

    @property
    def subscriptions(self) -> List[str]:
        return list(self._subscriptions)

    # Connection

    def _build_connection_headers(self, tokens: AuthTokens) -> Dict[str, str]:
        """
        Handshake headers: the server checks `Origin` and reads the session
        from `Cookie`.
        """
        auth_headers = self.auth_manager.get_authenticated_headers(tokens)
        headers = {
            "Origin": ORIGIN,
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "Accept-Language": "en-US,en;q=0.9",
            "User-Agent": auth_headers["User-Agent"],
        }
        if "Cookie" in auth_headers:
            headers["Cookie"] = auth_headers["Cookie"]
        return headers

    async def _open(self) -> None:
        """
        Authenticate, open the socket and start the background tasks.

        Leaves the state untouched on failure.
        """
        try:
            tokens = await self.auth_manager.ensure_authenticated()
        except AuthError as e:
            raise StreamAuthError(f"WebSocket authentication failed: {e}") from e
        except ClientError as e:
            raise StreamConnectionError(f"Could not prepare WebSocket session: {e}") from e

        url = self.url or self.region.websocket_url()
        headers = self._build_connection_headers(tokens)

        logger.info(f"Connecting to WebSocket: {url}")
        try:
            ws = await self._connector(
                url, additional_headers=headers, open_timeout=self.open_timeout
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in AUTH_REJECTED_STATUS_CODES:
                raise StreamAuthError(
                    f"WebSocket handshake rejected with HTTP {status}", status_code=status
                ) from e
            raise StreamConnectionError(
                f"WebSocket handshake failed with HTTP {status}", status_code=status
            ) from e
        except (OSError, WebSocketException) as e:
            raise StreamConnectionError(f"Failed to connect to {url}: {e}") from e

        self.ws = ws
        self._state = ConnectionState.CONNECTED
        self._generation += 1
        self._stopped.clear()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def connect(self) -> None:
        """
        Open an authenticated connection.

        ## Raises:
        - `StreamAuthError`: No valid session, or the handshake got 401/403
        - `StreamConnectionError`: Any other connection failure
        """
        if self.is_connected:
            logger.debug("WebSocket already connected")
            return
        if self._state != ConnectionState.DISCONNECTED:
            logger.debug(f"WebSocket busy ({self._state.value}), not opening another connection")
            return

        self._state = ConnectionState.CONNECTING
        try:
            await self._open()
        except StreamError:
            self._state = ConnectionState.DISCONNECTED
            raise

        logger.info("✅ Connected to WebSocket server")
        await self._notify("on_connected")

    async def _teardown(self) -> None:
        """Stop the background tasks and close the socket, in any state."""
        ws, self.ws = self.ws, None
        current = asyncio.current_task()

        tasks = [
            task
            for task in (self._reader_task, self._refresh_task)
            if task is not None and task is not current and not task.done()
        ]
        self._reader_task = None
        self._refresh_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing WebSocket: {e}")

    async def disconnect(self) -> None:
        """
        Close the connection and forget all subscriptions.

        Safe to call in any state and more than once.
        """
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._reconnect_task = None

        was_open = self._state != ConnectionState.DISCONNECTED or self.ws is not None
        await self._teardown()
        self._subscriptions.clear()
        self._state = ConnectionState.DISCONNECTED
        self._stopped.set()

        if was_open:
            logger.info("WebSocket disconnected")
            await self._notify("on_disconnected", "client disconnect")

    async def close(self) -> None:
        await self.disconnect()

    async def __aenter__(self) -> "AxiomWebSocketClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # Reconnection

    async def reconnect(self, timeout: Optional[float] = None) -> None:
        """
        Re-establish the connection and replay every subscription in order.

        ## Args:
        - `timeout` (float, optional): Overall limit for all attempts

        ## Raises:
        - `StreamAuthError`: Authentication failed, no further attempts
        - `StreamConnectionError`: All attempts failed
        - `ReconnectTimeoutError`: `timeout` elapsed first

        The client is left DISCONNECTED whenever this raises.
        """
        async with self._reconnect_lock:
            await self._reconnect(timeout)

    async def _reconnect(self, timeout: Optional[float]) -> None:
        self._state = ConnectionState.RECONNECTING
        await self._teardown()

        try:
            if timeout is None:
                await self._reconnect_with_backoff()
            else:
                await asyncio.wait_for(self._reconnect_with_backoff(), timeout)
        except asyncio.TimeoutError as e:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            raise ReconnectTimeoutError(
                f"Reconnection did not complete within {timeout} seconds", timeout=timeout
            ) from e
        except StreamError:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            raise

        await self._notify("on_connected")

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before 1-based `attempt`: none for the first."""
        if attempt <= 1:
            return 0.0
        return self.reconnect_delay * (2 ** (attempt - 2))

    async def _reconnect_with_backoff(self) -> None:
        last_error: Optional[StreamError] = None

        for attempt in range(1, self.max_reconnect_attempts + 1):
            if attempt > 1:
                delay = self.backoff_delay(attempt)
                logger.info(f"Waiting {delay} seconds before retry...")
                await asyncio.sleep(delay)

            logger.info(
                f"🔄 Reconnection attempt {attempt}/{self.max_reconnect_attempts}..."
            )
            try:
                await self._open()
                await self._replay_subscriptions()
            except StreamAuthError:
                logger.error("❌ Reconnection aborted: authentication failed")
                raise
            except StreamError as e:
                logger.warning(f"Reconnection attempt {attempt} failed: {e}")
                last_error = e
                await self._teardown()
                self._state = ConnectionState.RECONNECTING
                continue

            logger.info(f"✅ Reconnected after {attempt} attempt(s)")
            return

        raise StreamConnectionError(
            f"Failed to reconnect after {self.max_reconnect_attempts} attempts: {last_error}",
            attempts=self.max_reconnect_attempts,
        ) from last_error

    async def _replay_subscriptions(self) -> None:
        for room in list(self._subscriptions):
            await self._send_action("join", room)
            logger.info(f"✅ Restored subscription: {room}")

    async def _auto_reconnect(self) -> None:
        try:
            async with self._reconnect_lock:
                if self.is_connected:
                    return
                await self._reconnect(None)
        except StreamError as e:
            logger.error(f"❌ Automatic reconnection failed: {e}")
            self._stopped.set()
            await self._notify("on_error", e)

    # Background tasks

    async def _read_loop(self, ws: Any) -> None:
        reason = "connection closed"
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            if e.rcvd is not None:
                reason = f"code={e.rcvd.code} reason={e.rcvd.reason or 'Unknown'}"

        if ws is not self.ws:
            # Closed by us
            return
        await self._handle_unexpected_close(reason)

    def _mark_closed(self) -> int:
        """
        Record a close before anything awaits, so no other task sees a
        half-closed connection as merely disconnected.

        Returns the generation of the connection being closed.
        """
        if self.auto_reconnect:
            self._state = ConnectionState.RECONNECTING
        else:
            self._state = ConnectionState.DISCONNECTED
            self._stopped.set()
        return self._generation

    async def _handle_unexpected_close(self, reason: str) -> None:
        logger.warning(f"⚠️ WebSocket connection closed: {reason}")
        generation = self._mark_closed()
        await self._teardown()
        if generation != self._generation:
            # Replaced by a newer connection while closing
            return

        await self._notify("on_disconnected", reason)
        if self.auto_reconnect:
            self._reconnect_task = asyncio.create_task(self._auto_reconnect())

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.auth_manager.ensure_authenticated()
                logger.debug("Session checked for WebSocket connection")
            except ClientError as e:
                logger.error(f"❌ Session refresh failed, closing WebSocket: {e}")
                generation = self._generation
                self._state = ConnectionState.DISCONNECTED
                self._stopped.set()
                await self._teardown()
                if generation != self._generation:
                    return
                await self._notify("on_disconnected", f"session refresh failed: {e}")
                await self._notify("on_error", StreamAuthError(f"Session refresh failed: {e}"))
                return

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            data = _decode_message_content(raw)
        except ValueError as e:
            logger.error(f"Failed to parse WebSocket message: {str(raw)[:100]}...")
            await self._notify("on_error", e)
            return

        room = data.get("room") if isinstance(data, dict) else None
        callback = self._subscriptions.get(room) if isinstance(room, str) else None

        try:
            if callback is not None:
                await _maybe_await(callback(data))
            else:
                await _maybe_await(self.handler.on_message(data))
        except Exception as e:
            logger.error(f"Error handling WebSocket message: {e}", exc_info=True)
            await self._notify("on_error", e)

    async def _notify(self, event: str, *args: Any) -> None:
        try:
            await _maybe_await(getattr(self.handler, event)(*args))
        except Exception as e:
            logger.error(f"Message handler {event} failed: {e}", exc_info=True)

    async def run(self) -> None:
        """
        Connect if needed and block until the client stops.

        Returns after `disconnect()`, a terminal reconnect failure or a
        failed session refresh. Once stopped it returns at once; call
        `connect()` to start again.
        """
        if self._stopped.is_set():
            return
        if self._state == ConnectionState.DISCONNECTED:
            await self.connect()
        await self._stopped.wait()

    # Subscriptions

    async def _send_action(self, action: str, room: str) -> None:
        if self.ws is None:
            raise NotConnectedError("WebSocket not connected")
        try:
            await self.ws.send(json.dumps({"action": action, "room": room}))
        except ConnectionClosed as e:
            raise StreamConnectionError(f"Failed to send {action} for {room}: {e}") from e

    async def subscribe(self, room: str, callback: Optional[RoomCallback] = None) -> None:
        """
        Join a room.

        ## Args:
        - `room` (str): Room name
        - `callback` (callable, optional): Sync or async callable receiving the
          room's messages; without one they go to the handler

        ## Raises:
        - `NotConnectedError`: Not connected
        """
        if not self.is_connected:
            raise NotConnectedError(f"Cannot subscribe to {room}: WebSocket not connected")
        await self._send_action("join", room)
        self._subscriptions[room] = callback
        logger.info(f"✅ Subscribed to {room}")

    async def unsubscribe(self, room: str) -> None:
        """Leave a room; while disconnected it is only dropped from the replay list."""
        self._subscriptions.pop(room, None)
        if self.is_connected:
            await self._send_action("leave", room)
        logger.info(f"Unsubscribed from {room}")

    async def subscribe_new_tokens(self, callback: Optional[RoomCallback] = None) -> None:
        await self.subscribe(ROOM_NEW_PAIRS, callback)

    async def subscribe_token_price(
        self, token_address: str, callback: Optional[RoomCallback] = None
    ) -> None:
        await self.subscribe(token_address, callback)

    async def subscribe_wallet_transactions(
        self, wallet_address: str, callback: Optional[RoomCallback] = None
    ) -> None:
        await self.subscribe(f"{ROOM_WALLET_PREFIX}{wallet_address}", callback)
