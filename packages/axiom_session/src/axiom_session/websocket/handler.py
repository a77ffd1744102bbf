import logging
from typing import Any, Protocol, runtime_checkable


logger = logging.getLogger(__name__)


@runtime_checkable
class MessageHandler(Protocol):
    """
    Receives stream events from `AxiomWebSocketClient`.

    Messages for a room subscribed with its own callback go to that callback
    instead of `on_message`.
    """

    async def on_message(self, message: Any) -> None: ...

    async def on_connected(self) -> None: ...

    async def on_disconnected(self, reason: str) -> None: ...

    async def on_error(self, error: Exception) -> None: ...


class LoggingMessageHandler:
    """Default handler: logs every event."""

    async def on_message(self, message: Any) -> None:
        preview = str(message)
        if len(preview) > 200:
            preview = preview[:200] + "..."
        logger.info(f"Received message: {preview}")

    async def on_connected(self) -> None:
        logger.info("✅ WebSocket connected")

    async def on_disconnected(self, reason: str) -> None:
        logger.warning(f"WebSocket disconnected: {reason}")

    async def on_error(self, error: Exception) -> None:
        logger.error(f"❌ WebSocket error: {error}")
