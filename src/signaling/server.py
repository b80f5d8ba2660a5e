"""Signaling server.

Pairs two participants into a room and relays the handshake between them:
- Accepts WebSocket connections and assigns participant ids
- Admits joins through the SessionRegistry (two participants per room)
- Relays offers, answers, candidates and call-end via the RelayRouter
- Broadcasts room chat
- Serves health, metrics and ICE server endpoints over HTTP (port + 1)
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import assert_never

from aiohttp.web import Application, AppRunner, TCPSite
from pydantic import ValidationError

from src.common.errors import RoomFullError
from src.common.logging import setup_logging
from src.signaling.config import SignalingConfig
from src.signaling.health import setup_health_routes
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.protocol import (
    CallAnswerMessage,
    CallEndMessage,
    CallOfferMessage,
    ChatSendMessage,
    ClientMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    Member,
    RoomFullMessage,
    RoomJoinedMessage,
    SessionStartMessage,
    parse_client_message,
)
from src.signaling.registry import Participant, SessionRegistry
from src.signaling.router import RelayRouter, SignalingEnvelope, SignalingKind
from src.signaling.transport.base import ConnectionHandler, ParticipantConnection
from src.signaling.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SignalingServer(ConnectionHandler):
    """Signaling core driven by a transport.

    Owns the registry and router. Every inbound frame is parsed into a closed
    set of client messages and dispatched exhaustively; a failure while
    handling one frame is logged and never affects other frames or rooms.
    """

    def __init__(
        self,
        config: SignalingConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize signaling server.

        Args:
            config: Server configuration (defaults when omitted)
            metrics: Metrics collector (defaults to the global collector)
        """
        self.config = config or SignalingConfig()
        self.metrics = metrics or get_metrics_collector()

        rooms = self.config.rooms
        self.registry = SessionRegistry(
            max_participants=rooms.max_participants,
            chat_history_limit=rooms.chat_history_limit,
            evict_chat_history_when_empty=rooms.evict_chat_history_when_empty,
            metrics=self.metrics,
        )
        self.router = RelayRouter(self.registry, metrics=self.metrics)

    async def handle_connect(self, connection: ParticipantConnection) -> None:
        """Register the participant and tell the client its id."""
        participant = Participant(connection=connection)
        self.registry.register(participant)
        self.metrics.record_connection_open()

        logger.info("Participant connected", extra={"participant_id": participant.id})

        await connection.send(SessionStartMessage(id=participant.id))

    async def handle_message(self, connection: ParticipantConnection, raw: str) -> None:
        """Parse and dispatch one client frame."""
        participant = self.registry.get_participant(connection.participant_id)
        if participant is None:
            return

        try:
            message = parse_client_message(raw)
        except ValidationError as e:
            logger.debug(
                "Malformed frame dropped",
                extra={"participant_id": participant.id, "error": str(e)},
            )
            self.metrics.record_drop("malformed")
            return

        try:
            await self.dispatch(participant, message)
        except Exception as e:
            logger.error(
                "Error handling message",
                extra={"participant_id": participant.id, "type": message.type, "error": str(e)},
                exc_info=True,
            )
            await connection.send(ErrorMessage(message="Internal server error"))

    async def handle_disconnect(self, connection: ParticipantConnection) -> None:
        """Release the participant from its room and forget it."""
        participant = self.registry.get_participant(connection.participant_id)
        if participant is None:
            return

        try:
            await self.registry.leave_current(participant)
        finally:
            self.registry.unregister(participant)
            self.metrics.record_connection_closed()

        logger.info("Participant disconnected", extra={"participant_id": participant.id})

    async def dispatch(self, participant: Participant, message: ClientMessage) -> None:
        """Handle a parsed client message.

        Args:
            participant: Sending participant
            message: Parsed client frame
        """
        match message:
            case JoinRoomMessage():
                await self._handle_join(participant, message)
            case LeaveRoomMessage():
                await self._handle_leave(participant, message)
            case CallOfferMessage():
                await self.router.route(
                    SignalingEnvelope(
                        kind=SignalingKind.OFFER,
                        sender=participant.id,
                        to=message.to,
                        payload=message.sdp_offer,
                        display_name=message.display_name or participant.display_name,
                    )
                )
            case CallAnswerMessage():
                await self.router.route(
                    SignalingEnvelope(
                        kind=SignalingKind.ANSWER,
                        sender=participant.id,
                        to=message.to,
                        payload=message.sdp_answer,
                        display_name=message.display_name or participant.display_name,
                    )
                )
            case IceCandidateMessage():
                await self.router.route(
                    SignalingEnvelope(
                        kind=SignalingKind.ICE_CANDIDATE,
                        sender=participant.id,
                        to=message.to,
                        payload=message.candidate,
                    )
                )
            case CallEndMessage():
                await self.router.route(
                    SignalingEnvelope(
                        kind=SignalingKind.CALL_END,
                        sender=participant.id,
                        to=message.to,
                    )
                )
            case ChatSendMessage():
                await self._handle_chat(participant, message)
            case _:
                assert_never(message)

    async def _handle_join(self, participant: Participant, message: JoinRoomMessage) -> None:
        try:
            room_id = self.registry.normalize_room_id(message.room)
        except ValueError as e:
            await participant.connection.send(ErrorMessage(message=str(e), code="INVALID_ROOM"))
            return

        participant.display_name = message.display_name.strip() or "Anonymous"

        try:
            members = await self.registry.join(room_id, participant)
        except RoomFullError as e:
            self.metrics.record_join(accepted=False)
            await participant.connection.send(RoomFullMessage(room=room_id, reason=e.reason))
            return

        self.metrics.record_join(accepted=True)
        await participant.connection.send(
            RoomJoinedMessage(
                room=room_id,
                members=[Member(id=m.id, display_name=m.display_name) for m in members],
            )
        )

    async def _handle_leave(self, participant: Participant, message: LeaveRoomMessage) -> None:
        room = (message.room or "").strip()
        if room:
            await self.registry.leave(room, participant)
        else:
            await self.registry.leave_current(participant)

    async def _handle_chat(self, participant: Participant, message: ChatSendMessage) -> None:
        room_id = message.room.strip()
        if not room_id or participant.room_id != room_id:
            logger.debug(
                "Chat from outside the room dropped",
                extra={"participant_id": participant.id, "room": room_id},
            )
            self.metrics.record_drop("chat_not_in_room")
            return

        if not message.text.strip():
            return

        if len(message.text) > self.config.rooms.max_chat_length:
            await participant.connection.send(
                ErrorMessage(
                    message=f"Chat message exceeds {self.config.rooms.max_chat_length} characters",
                    code="CHAT_TOO_LONG",
                )
            )
            return

        stored = self.registry.record_chat(room_id, participant, message.text)
        await self.router.broadcast_chat(room_id, stored)


async def start_server(
    config_path: Path | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Start the signaling server and run until cancelled.

    Args:
        config_path: Path to YAML config file (defaults apply when missing)
        stop_event: Optional event that stops the server when set

    Raises:
        OSError: If a listening port cannot be bound
    """
    config = SignalingConfig.from_yaml_with_defaults(config_path)
    setup_logging(config.log_level)
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    server = SignalingServer(config)

    ws_config = config.transport.websocket
    transport = WebSocketTransport(
        handler=server,
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        max_message_bytes=ws_config.max_message_bytes,
        ping_interval_s=ws_config.ping_interval_s,
        ping_timeout_s=ws_config.ping_timeout_s,
    )
    await transport.start()

    # Health, metrics and ICE endpoints on the next port
    http_port = ws_config.port + 1
    http_app = Application()
    setup_health_routes(
        http_app,
        transport=transport,
        registry=server.registry,
        ice_config=config.ice,
        metrics_collector=server.metrics,
    )

    runner = AppRunner(http_app)
    await runner.setup()
    site = TCPSite(runner, ws_config.host, http_port)
    await site.start()
    logger.info("HTTP server started", extra={"port": http_port})

    try:
        logger.info("Signaling server ready", extra={"port": ws_config.port})
        await (stop_event or asyncio.Event()).wait()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down signaling server")

        try:
            await asyncio.wait_for(transport.stop(), timeout=config.graceful_shutdown_timeout_s)
        except TimeoutError:
            logger.warning(
                "Transport shutdown timed out",
                extra={"timeout_s": config.graceful_shutdown_timeout_s},
            )

        await runner.cleanup()
        logger.info("Signaling server stopped")


def main() -> None:
    """Entry point for the signaling server."""
    parser = argparse.ArgumentParser(description="Two-party call signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
