"""WebSocket client for the signaling server.

Writes outbound frames through a single FIFO so they reach the server in the
order they were sent, and hands every parsed inbound frame to a callback.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TypeAlias

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection

from src.signaling.protocol import ServerMessage, WireModel, parse_server_message

logger = logging.getLogger(__name__)

MessageCallback: TypeAlias = Callable[[ServerMessage], Awaitable[None] | None]


class SignalingChannel(ABC):
    """Outbound path to the signaling server."""

    @abstractmethod
    async def send(self, message: WireModel) -> None:
        """Queue a client frame for the server.

        Raises:
            ConnectionError: If the channel is not connected
        """
        pass


class SignalingClient(SignalingChannel):
    """Signaling connection over WebSocket."""

    def __init__(
        self,
        url: str,
        on_message: MessageCallback | None = None,
        on_close: Callable[[], Awaitable[None] | None] | None = None,
        max_message_bytes: int = 2**16,
    ) -> None:
        """Initialize signaling client.

        Args:
            url: Server URL (e.g. ws://localhost:8000)
            on_message: Called with every parsed server frame, in order
            on_close: Called once when the connection closes
            max_message_bytes: Maximum inbound frame size
        """
        self.url = url
        self.on_message = on_message
        self.on_close = on_close
        self._max_message_bytes = max_message_bytes

        self._websocket: ClientConnection | None = None
        self._outbound: asyncio.Queue[str] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._connected = False
        self._closed = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open the connection and start the reader and writer.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        logger.info("Connecting to signaling server", extra={"url": self.url})
        try:
            self._websocket = await websockets.connect(self.url, max_size=self._max_message_bytes)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ConnectionError(f"Cannot connect to signaling server at {self.url}: {e}") from e

        self._connected = True
        self._closed.clear()
        self._writer_task = asyncio.create_task(self._write_loop())
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to signaling server", extra={"url": self.url})

    async def send(self, message: WireModel) -> None:
        if not self._connected:
            raise ConnectionError("Signaling connection is closed")
        await self._outbound.put(message.to_json())

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._websocket is None:
            return

        self._connected = False

        # Give queued frames (e.g. call:end, room:leave) a chance to go out
        if self._writer_task is not None and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._outbound.join(), timeout=1.0)
            except TimeoutError:
                logger.debug("Outbound queue not drained before close")
            self._writer_task.cancel()

        await self._websocket.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)

        self._websocket = None

    async def wait_closed(self) -> None:
        """Wait until the connection has closed."""
        await self._closed.wait()

    async def _write_loop(self) -> None:
        assert self._websocket is not None
        while True:
            frame = await self._outbound.get()
            try:
                await self._websocket.send(frame)
            except websockets.exceptions.ConnectionClosed:
                self._connected = False
                logger.warning("Frame not sent, signaling connection closed")
                return
            finally:
                self._outbound.task_done()

    async def _read_loop(self) -> None:
        assert self._websocket is not None
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    continue

                try:
                    message = parse_server_message(raw_message)
                except ValidationError as e:
                    logger.warning("Malformed server frame dropped", extra={"error": str(e)})
                    continue

                if self.on_message is not None:
                    result = self.on_message(message)
                    if result is not None:
                        await result

        except websockets.exceptions.ConnectionClosed:
            logger.info("Signaling connection closed by server")
        finally:
            self._connected = False
            self._closed.set()
            if self._writer_task is not None:
                self._writer_task.cancel()
            if self.on_close is not None:
                result = self.on_close()
                if result is not None:
                    await result
