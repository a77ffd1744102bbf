from .client import AxiomWebSocketClient, ConnectionState
from .handler import LoggingMessageHandler, MessageHandler

__all__ = [
    "AxiomWebSocketClient",
    "ConnectionState",
    "LoggingMessageHandler",
    "MessageHandler",
]
