"""Base transport abstraction for signaling connections.

Defines the interface that transport implementations must provide so the
registry and relay router can deliver frames without knowing how clients are
connected.
"""

from abc import ABC, abstractmethod

from src.signaling.protocol import WireModel


class ParticipantConnection(ABC):
    """One client connection as seen by the signaling core.

    Each transport provides a concrete connection type that handles frame
    serialization while conforming to this interface.
    """

    @abstractmethod
    async def send(self, message: WireModel) -> bool:
        """Deliver a server frame to the client.

        Delivery is best-effort: failures are logged by the implementation
        and reported through the return value, never raised.

        Args:
            message: Server → client frame

        Returns:
            True if the frame was handed to the network, False otherwise
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection.

        Safe to call more than once.
        """
        pass

    @property
    @abstractmethod
    def participant_id(self) -> str:
        """Participant id assigned to this connection."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class ConnectionHandler(ABC):
    """Receiver of connection lifecycle events from a transport.

    A transport calls these for each connection in order: one
    ``handle_connect``, then ``handle_message`` once per inbound frame (never
    concurrently for the same connection), then one ``handle_disconnect``.
    """

    @abstractmethod
    async def handle_connect(self, connection: ParticipantConnection) -> None:
        """A client connected."""
        pass

    @abstractmethod
    async def handle_message(self, connection: ParticipantConnection, raw: str) -> None:
        """A text frame arrived from the client.

        Implementations must not raise: a failing frame is dropped without
        affecting the connection or any other session.
        """
        pass

    @abstractmethod
    async def handle_disconnect(self, connection: ParticipantConnection) -> None:
        """The client connection closed (socket close or keepalive timeout)."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server that accepts client
    connections and feeds their frames into the signaling core.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start accepting connections.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport and close all open connections."""
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
