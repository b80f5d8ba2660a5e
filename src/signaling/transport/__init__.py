"""Transport layer for signaling client connections.

Provides abstraction over how clients are connected so the registry and relay
router only deal with ParticipantConnection instances.
"""

from src.signaling.transport.base import ConnectionHandler, ParticipantConnection, Transport
from src.signaling.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ConnectionHandler",
    "ParticipantConnection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
