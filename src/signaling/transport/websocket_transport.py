"""WebSocket transport implementation.

Accepts signaling clients over WebSocket and feeds their JSON text frames to
the signaling core. Each connection's frames are handled one after another,
which preserves per-sender ordering through the relay.
"""

import logging
import uuid
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.signaling.protocol import WireModel
from src.signaling.transport.base import ConnectionHandler, ParticipantConnection, Transport

logger = logging.getLogger(__name__)

# Close code sent when the server refuses a connection because it is full
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection(ParticipantConnection):
    """WebSocket-based participant connection.

    Implements the ParticipantConnection interface for WebSocket clients,
    handling JSON frame serialization.
    """

    def __init__(self, websocket: ServerConnection, participant_id: str) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            participant_id: Unique participant identifier
        """
        self._websocket = websocket
        self._participant_id = participant_id
        self._connected = True

        logger.info(
            "WebSocket connection initialized",
            extra={"participant_id": participant_id, "remote": websocket.remote_address},
        )

    @property
    def participant_id(self) -> str:
        """Get unique participant identifier."""
        return self._participant_id

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send(self, message: WireModel) -> bool:
        """Send a server frame to the client.

        Args:
            message: Server → client frame

        Returns:
            True if the frame was written, False if the connection is gone
        """
        if not self.is_connected:
            return False

        try:
            await self._websocket.send(message.to_json())
            return True
        except websockets.exceptions.ConnectionClosed:
            self._connected = False
            logger.debug(
                "Send on closed connection",
                extra={"participant_id": self._participant_id},
            )
            return False
        except Exception as e:
            logger.error(
                "Failed to send message",
                extra={"participant_id": self._participant_id, "error": str(e)},
            )
            return False

    def mark_closed(self) -> None:
        """Record that the underlying socket has closed."""
        self._connected = False

    async def close(self) -> None:
        """Close the connection."""
        if not self._connected:
            return

        logger.info("Closing WebSocket connection", extra={"participant_id": self._participant_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"participant_id": self._participant_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and drives a ConnectionHandler for
    every accepted client.
    """

    def __init__(
        self,
        handler: ConnectionHandler,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8000,
        max_connections: int = 200,
        max_message_bytes: int = 2**16,
        ping_interval_s: float | None = 20.0,
        ping_timeout_s: float | None = 20.0,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            handler: Receiver of connection events
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound frame size
            ping_interval_s: Keepalive ping interval (None disables)
            ping_timeout_s: Keepalive timeout before the connection is dropped
        """
        self._handler = handler
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._ping_interval_s = ping_interval_s
        self._ping_timeout_s = ping_timeout_s
        self._server: Any = None  # websockets Server type
        self._running = False
        self._connections: dict[str, WebSocketConnection] = {}

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def connection_count(self) -> int:
        """Number of open connections."""
        return len(self._connections)

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
                ping_interval=self._ping_interval_s,
                ping_timeout=self._ping_timeout_s,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self._port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close all open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        for connection in list(self._connections.values()):
            await connection.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle one client connection from accept to close.

        Args:
            websocket: WebSocket connection
        """
        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Connection refused, server at capacity",
                extra={"remote": websocket.remote_address, "max_connections": self._max_connections},
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "Server at capacity")
            return

        participant_id = f"p-{uuid.uuid4().hex[:12]}"
        connection = WebSocketConnection(websocket, participant_id)
        self._connections[participant_id] = connection

        try:
            await self._handler.handle_connect(connection)

            async for raw_message in websocket:
                if not isinstance(raw_message, str):
                    logger.debug(
                        "Received non-text WebSocket message, skipping",
                        extra={"participant_id": participant_id},
                    )
                    continue

                await self._handler.handle_message(connection, raw_message)

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"participant_id": participant_id},
            )
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"participant_id": participant_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            connection.mark_closed()
            self._connections.pop(participant_id, None)
            await self._handler.handle_disconnect(connection)
            logger.info(
                "WebSocket connection closed",
                extra={"participant_id": participant_id},
            )
