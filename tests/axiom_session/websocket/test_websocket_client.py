"""
Unit tests for AxiomWebSocketClient with an in-memory connector.

Tests cover:
- Frame decoding (JSON text, msgpack and UTF-8 binary)
- Authenticated handshake headers and error mapping
- Subscriptions, room routing and handler notifications
- Reconnection: ordered replay, backoff, auth errors, exhaustion, timeout
- Automatic reconnection after an unexpected close
- Periodic session refresh and its failure path
- Idempotent disconnect
"""

import asyncio
import json
from datetime import timedelta

import msgpack
import pytest
from unittest.mock import AsyncMock, Mock
from websockets.exceptions import InvalidStatus

from shared_lib.exceptions import NetworkError
from shared_lib.utils.date import utc_now

from axiom_session.auth.models import AuthTokens
from axiom_session.exceptions import (
    NotAuthenticatedError,
    NotConnectedError,
    ReconnectTimeoutError,
    StreamAuthError,
    StreamConnectionError,
    TokenExpiredError,
)
from axiom_session.urls import Region
from axiom_session.websocket import AxiomWebSocketClient, ConnectionState
from axiom_session.websocket.client import _decode_message_content


_END = object()


class FakeWebSocket:
    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def feed(self, message) -> None:
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_END)


class FakeConnector:
    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls: list[dict] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url, additional_headers=None, open_timeout=None):
        self.calls.append({"url": url, "headers": additional_headers})
        if self.failures:
            failure = self.failures.pop(0)
            if failure == "hang":
                await asyncio.Event().wait()
            raise failure
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


class RecordingHandler:
    def __init__(self):
        self.events: list[tuple] = []

    async def on_message(self, message):
        self.events.append(("message", message))

    async def on_connected(self):
        self.events.append(("connected",))

    async def on_disconnected(self, reason):
        self.events.append(("disconnected", reason))

    async def on_error(self, error):
        self.events.append(("error", error))

    def names(self) -> list[str]:
        return [event[0] for event in self.events]


def _status_error(status: int) -> InvalidStatus:
    return InvalidStatus(Mock(status_code=status))


async def _until(condition, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def auth_manager():
    tokens = AuthTokens(
        access_token="access",
        refresh_token="refresh",
        expires_at=utc_now() + timedelta(hours=1),
    )
    auth = Mock()
    auth.ensure_authenticated = AsyncMock(return_value=tokens)
    auth.get_authenticated_headers = Mock(
        return_value={
            "Authorization": "Bearer access",
            "User-Agent": "Mozilla/5.0 test",
            "Cookie": "auth-refresh-token=refresh; auth-access-token=access",
        }
    )
    return auth


@pytest.fixture
def handler():
    return RecordingHandler()


def _client(auth_manager, handler, connector, **kwargs) -> AxiomWebSocketClient:
    kwargs.setdefault("reconnect_delay", 0.001)
    return AxiomWebSocketClient(
        auth_manager, handler=handler, connector=connector, **kwargs
    )


class TestDecodeMessageContent:
    def test_text_is_json(self):
        assert _decode_message_content('{"room": "new_pairs"}') == {"room": "new_pairs"}

    def test_binary_msgpack(self):
        payload = msgpack.packb({"room": "sol_price", "price": 150.5})

        assert _decode_message_content(payload) == {"room": "sol_price", "price": 150.5}

    def test_binary_utf8_fallback(self):
        assert _decode_message_content(b"hello") == "hello"
        assert _decode_message_content(b'{"a": 1}') == {"a": 1}

    def test_invalid_text(self):
        with pytest.raises(ValueError):
            _decode_message_content("{oops")


class TestConnect:
    @pytest.mark.asyncio
    async def test_handshake_headers(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, region=Region.EU_EAST)

        await ws.connect()

        call = connector.calls[0]
        assert call["url"] == "wss://cluster8.axiom.trade/"
        assert call["headers"]["Origin"] == "https://axiom.trade"
        assert call["headers"]["User-Agent"] == "Mozilla/5.0 test"
        assert "auth-access-token=access" in call["headers"]["Cookie"]
        assert "Authorization" not in call["headers"]
        assert ws.state == ConnectionState.CONNECTED
        assert ws.is_connected
        assert handler.names() == ["connected"]

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_connect_twice_is_noop(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)

        await ws.connect()
        await ws.connect()

        assert len(connector.calls) == 1

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_auth_failure(self, auth_manager, handler):
        auth_manager.ensure_authenticated.side_effect = NotAuthenticatedError("no session")
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)

        with pytest.raises(StreamAuthError):
            await ws.connect()

        assert connector.calls == []
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_session_network_failure(self, auth_manager, handler):
        auth_manager.ensure_authenticated.side_effect = NetworkError("offline")
        ws = _client(auth_manager, handler, FakeConnector())

        with pytest.raises(StreamConnectionError):
            await ws.connect()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_handshake_auth_rejection(self, auth_manager, handler, status):
        ws = _client(auth_manager, handler, FakeConnector([_status_error(status)]))

        with pytest.raises(StreamAuthError) as exc_info:
            await ws.connect()

        assert exc_info.value.details["status_code"] == status
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_handshake_other_failures(self, auth_manager, handler):
        ws = _client(
            auth_manager,
            handler,
            FakeConnector([_status_error(502), ConnectionRefusedError("refused")]),
        )

        with pytest.raises(StreamConnectionError):
            await ws.connect()
        with pytest.raises(StreamConnectionError):
            await ws.connect()

        assert ws.state == ConnectionState.DISCONNECTED


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_requires_connection(self, auth_manager, handler):
        ws = _client(auth_manager, handler, FakeConnector())

        with pytest.raises(NotConnectedError):
            await ws.subscribe("new_pairs")

    @pytest.mark.asyncio
    async def test_join_and_leave(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()

        await ws.subscribe_new_tokens()
        await ws.subscribe_token_price("TokenMint111")
        await ws.subscribe_wallet_transactions("Wallet222")
        await ws.unsubscribe("TokenMint111")

        assert connector.sockets[0].sent == [
            {"action": "join", "room": "new_pairs"},
            {"action": "join", "room": "TokenMint111"},
            {"action": "join", "room": "v:Wallet222"},
            {"action": "leave", "room": "TokenMint111"},
        ]
        assert ws.subscriptions == ["new_pairs", "v:Wallet222"]

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_routing(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        received = []
        await ws.subscribe("new_pairs", received.append)
        socket = connector.sockets[0]

        socket.feed('{"room": "new_pairs", "pair": "abc"}')
        socket.feed(msgpack.packb({"room": "sol_price", "price": 1}))
        await _until(lambda: len(handler.events) >= 2)

        assert received == [{"room": "new_pairs", "pair": "abc"}]
        assert handler.events[-1] == ("message", {"room": "sol_price", "price": 1})

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_callback_errors_reach_handler(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        await ws.subscribe("new_pairs", AsyncMock(side_effect=RuntimeError("bug")))

        connector.sockets[0].feed('{"room": "new_pairs"}')
        connector.sockets[0].feed("{not json")
        await _until(lambda: handler.names().count("error") == 2)

        assert ws.is_connected

        await ws.disconnect()


class TestReconnect:
    def test_backoff(self, auth_manager, handler):
        ws = _client(auth_manager, handler, FakeConnector(), reconnect_delay=1.0)

        assert [ws.backoff_delay(n) for n in range(1, 6)] == [0.0, 1.0, 2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_replays_subscriptions_in_order(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        for room in ("new_pairs", "v:Wallet", "TokenMint"):
            await ws.subscribe(room)

        await ws.reconnect()

        assert len(connector.sockets) == 2
        assert connector.sockets[0].closed
        assert connector.sockets[1].sent == [
            {"action": "join", "room": "new_pairs"},
            {"action": "join", "room": "v:Wallet"},
            {"action": "join", "room": "TokenMint"},
        ]
        assert ws.state == ConnectionState.CONNECTED

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_retries_until_success(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        connector.failures = [OSError("down"), _status_error(503)]

        await ws.reconnect()

        assert len(connector.calls) == 4
        assert ws.is_connected

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_auth_error_is_terminal(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        connector.failures = [_status_error(401), OSError("unused")]

        with pytest.raises(StreamAuthError):
            await ws.reconnect()

        assert len(connector.calls) == 2
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_exhaustion(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, max_reconnect_attempts=3)
        await ws.connect()
        connector.failures = [OSError("down")] * 3

        with pytest.raises(StreamConnectionError):
            await ws.reconnect()

        assert len(connector.calls) == 4
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_timeout(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        connector.failures = ["hang"]

        with pytest.raises(ReconnectTimeoutError):
            await ws.reconnect(timeout=0.05)

        assert ws.state == ConnectionState.DISCONNECTED


class TestUnexpectedClose:
    @pytest.mark.asyncio
    async def test_auto_reconnect(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        await ws.subscribe("new_pairs")

        connector.sockets[0].drop()
        await _until(lambda: len(connector.sockets) == 2 and ws.is_connected)

        assert connector.sockets[1].sent == [{"action": "join", "room": "new_pairs"}]
        assert handler.names() == ["connected", "disconnected", "connected"]

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_without_auto_reconnect(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, auto_reconnect=False)
        await ws.connect()
        runner = asyncio.create_task(ws.run())

        connector.sockets[0].drop()
        await asyncio.wait_for(runner, 1.0)
        await asyncio.sleep(0.01)

        assert ws.state == ConnectionState.DISCONNECTED
        assert len(connector.calls) == 1
        assert ws.ws is None
        assert connector.sockets[0].closed
        assert handler.names() == ["connected", "disconnected"]

    @pytest.mark.asyncio
    async def test_drop_while_running(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, auto_reconnect=False)
        await ws.connect()
        runner = asyncio.create_task(ws.run())
        await asyncio.sleep(0.01)

        connector.sockets[0].drop()
        await asyncio.wait_for(runner, 1.0)

        assert len(connector.calls) == 1
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_no_second_socket_while_reconnecting(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        runner = asyncio.create_task(ws.run())

        connector.sockets[0].drop()
        await _until(lambda: len(connector.sockets) == 2 and ws.is_connected)
        await asyncio.sleep(0.01)

        assert len(connector.calls) == 2
        assert not runner.done()

        await ws.disconnect()
        await asyncio.wait_for(runner, 1.0)
        assert all(socket.closed for socket in connector.sockets)

    @pytest.mark.asyncio
    async def test_failed_auto_reconnect_reports_error(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, max_reconnect_attempts=2)
        await ws.connect()
        connector.failures = [OSError("down")] * 2

        connector.sockets[0].drop()
        await _until(lambda: "error" in handler.names())

        assert isinstance(handler.events[-1][1], StreamConnectionError)
        assert ws.state == ConnectionState.DISCONNECTED


class TestSessionRefresh:
    @pytest.mark.asyncio
    async def test_periodic_check(self, auth_manager, handler):
        ws = _client(auth_manager, handler, FakeConnector(), refresh_interval=0.01)
        await ws.connect()

        await _until(lambda: auth_manager.ensure_authenticated.await_count >= 3)

        assert ws.is_connected

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_failure_tears_down(self, auth_manager, handler):
        auth_manager.ensure_authenticated.side_effect = [
            auth_manager.ensure_authenticated.return_value,
            TokenExpiredError("refresh rejected"),
        ]
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, refresh_interval=0.01)
        await ws.connect()

        await _until(lambda: ws.state == ConnectionState.DISCONNECTED)
        await _until(lambda: "error" in handler.names())

        assert connector.sockets[0].closed
        assert isinstance(handler.events[-1][1], StreamAuthError)

    @pytest.mark.asyncio
    async def test_failure_stops_run(self, auth_manager, handler):
        auth_manager.ensure_authenticated.side_effect = [
            auth_manager.ensure_authenticated.return_value,
            TokenExpiredError("refresh rejected"),
        ]
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector, refresh_interval=0.01)

        await asyncio.wait_for(ws.run(), 1.0)
        await asyncio.sleep(0.01)

        assert len(connector.calls) == 1
        assert ws.ws is None
        assert ws.state == ConnectionState.DISCONNECTED


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_idempotent(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        await ws.subscribe("new_pairs")

        await ws.disconnect()
        await ws.disconnect()

        assert ws.state == ConnectionState.DISCONNECTED
        assert ws.subscriptions == []
        assert connector.sockets[0].closed
        assert handler.names().count("disconnected") == 1

    @pytest.mark.asyncio
    async def test_run_after_disconnect_returns(self, auth_manager, handler):
        connector = FakeConnector()
        ws = _client(auth_manager, handler, connector)
        await ws.connect()
        await ws.disconnect()

        await asyncio.wait_for(ws.run(), 1.0)

        assert len(connector.calls) == 1
        assert ws.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_context_manager(self, auth_manager, handler):
        connector = FakeConnector()

        async with _client(auth_manager, handler, connector) as ws:
            assert ws.is_connected

        assert ws.state == ConnectionState.DISCONNECTED
