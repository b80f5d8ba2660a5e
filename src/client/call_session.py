"""Call session controller.

Glue between the signaling connection, the negotiation coordinator and the
user: joins rooms, feeds server frames to the coordinator, keeps the chat
log and tears the call down exactly once.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, assert_never

from pyee.asyncio import AsyncIOEventEmitter

from src.client.media import TrackKind
from src.client.negotiation import DEFAULT_REMOTE_NAME, NegotiationCoordinator
from src.client.signaling_client import SignalingChannel
from src.common.errors import RoomFullError
from src.signaling.protocol import (
    CallAcceptedMessage,
    CallEndedMessage,
    CallEndMessage,
    CallIncomingMessage,
    ChatBroadcastMessage,
    ChatSendMessage,
    ErrorMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    Member,
    RelayedIceCandidateMessage,
    RoomFullMessage,
    RoomJoinedMessage,
    ServerMessage,
    SessionStartMessage,
    UserJoinedMessage,
    UserLeftMessage,
)

logger = logging.getLogger(__name__)


@dataclass
class ChatEntry:
    """Chat message as shown to the user."""

    id: int
    sender: str
    sender_id: str
    text: str
    timestamp: datetime
    is_local: bool


class CallSessionController(AsyncIOEventEmitter):
    """Per-user call session.

    Events (pyee):
        chat: (ChatEntry) a new chat message was stored
        peer: (remote id or None, display name) the remote participant changed
        remote_track: (track or None) remote media arrived or was cleared
        call_ended: the call was torn down locally or by the peer
    """

    def __init__(
        self,
        channel: SignalingChannel,
        coordinator: NegotiationCoordinator,
        display_name: str = "Anonymous",
        join_timeout_s: float = 10.0,
    ) -> None:
        super().__init__()
        self._channel = channel
        self.coordinator = coordinator
        self.display_name = display_name
        self.join_timeout_s = join_timeout_s

        self.local_id: str | None = None
        self.room: str | None = None
        self.remote_id: str | None = None
        self.remote_display_name = DEFAULT_REMOTE_NAME
        self.remote_tracks: list[Any] = []
        self.chat_messages: list[ChatEntry] = []

        self._chat_ids: set[int] = set()
        self._join_future: asyncio.Future[list[Member]] | None = None
        self._ended = False
        self._tasks: set[asyncio.Task[None]] = set()

        self.on("error", self._on_listener_error)
        coordinator.display_name = display_name
        coordinator.on("track", self._on_remote_track)

    # === Inbound ===

    def dispatch(self, message: ServerMessage) -> None:
        """Handle a server frame in its own task."""
        task = asyncio.create_task(self.handle_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_message(self, message: ServerMessage) -> None:
        """Handle one server frame. Failures are logged, never raised."""
        try:
            await self._handle(message)
        except Exception as e:
            logger.error(
                "Error handling server message",
                extra={"type": message.type, "error": str(e)},
                exc_info=True,
            )

    async def _handle(self, message: ServerMessage) -> None:
        match message:
            case SessionStartMessage():
                self.local_id = message.id
                self.coordinator.local_id = message.id
                logger.info("Session started", extra={"participant_id": message.id})

            case RoomJoinedMessage():
                self.room = message.room
                if self._join_future is not None and not self._join_future.done():
                    self._join_future.set_result(message.members)
                for member in message.members:
                    if member.id != self.local_id:
                        self._learn_peer(member.id, member.display_name)

            case RoomFullMessage():
                if self._join_future is not None and not self._join_future.done():
                    self._join_future.set_exception(RoomFullError(message.room, message.reason))
                else:
                    logger.warning("Unexpected room:full", extra={"room": message.room})

            case UserJoinedMessage():
                if message.id != self.local_id:
                    self._learn_peer(message.id, message.display_name)

            case UserLeftMessage():
                if message.id == self.remote_id:
                    logger.info("Peer left", extra={"remote_id": message.id})
                    await self._cleanup_remote()

            case CallIncomingMessage():
                if self.remote_id is None:
                    self._set_remote(message.sender, message.display_name or DEFAULT_REMOTE_NAME)
                elif message.sender == self.remote_id and message.display_name:
                    self._set_remote(message.sender, message.display_name)
                await self.coordinator.handle_incoming_offer(
                    message.sender, message.sdp_offer, message.display_name
                )

            case CallAcceptedMessage():
                await self.coordinator.handle_answer(
                    message.sender, message.sdp_answer, message.display_name
                )

            case RelayedIceCandidateMessage():
                await self.coordinator.handle_remote_ice_candidate(message.candidate)

            case CallEndedMessage():
                if message.sender == self.remote_id:
                    logger.info("Peer ended the call", extra={"remote_id": message.sender})
                    await self._cleanup_remote()

            case ChatBroadcastMessage():
                self._store_chat(message)

            case ErrorMessage():
                logger.warning(
                    "Server error",
                    extra={"code": message.code, "error_message": message.message},
                )

            case _:
                assert_never(message)

    # === Room ===

    async def join(self, room: str) -> list[Member]:
        """Join a room and wait for the server's verdict.

        Returns:
            Room membership including the local participant

        Raises:
            RoomFullError: If the room is at capacity
            TimeoutError: If the server does not answer in time
            ConnectionError: If the signaling channel is closed
        """
        loop = asyncio.get_running_loop()
        self._join_future = loop.create_future()
        try:
            await self._channel.send(JoinRoomMessage(room=room, display_name=self.display_name))
            members = await asyncio.wait_for(self._join_future, timeout=self.join_timeout_s)
        except RoomFullError as e:
            logger.warning("Room is full", extra={"room": e.room})
            raise
        finally:
            self._join_future = None

        self._ended = False
        logger.info("Joined room", extra={"room": self.room, "members": len(members)})
        return members

    async def send_chat(self, text: str) -> bool:
        """Send a chat message to the room.

        Returns:
            False if the text is blank or no room is joined
        """
        if not text.strip():
            return False
        if self.room is None:
            logger.warning("Chat not sent, no room joined")
            return False
        await self._channel.send(
            ChatSendMessage(room=self.room, text=text, display_name=self.display_name)
        )
        return True

    # === Media ===

    def toggle_audio(self) -> bool:
        return self._toggle(TrackKind.AUDIO)

    def toggle_video(self) -> bool:
        return self._toggle(TrackKind.VIDEO)

    def _toggle(self, kind: TrackKind) -> bool:
        stream = self.coordinator.local_stream
        if stream is None:
            return False
        tracks = stream.audio_tracks if kind is TrackKind.AUDIO else stream.video_tracks
        if not tracks:
            return False
        track = tracks[0]
        track.enabled = not track.enabled
        logger.info("Local track toggled", extra={"kind": kind.value, "enabled": track.enabled})
        return track.enabled

    # === Teardown ===

    async def end_call(self) -> None:
        """End the call and leave the room.

        A second call before the next join does nothing. Never raises.
        """
        if self._ended:
            return
        self._ended = True

        self.coordinator.release_local_media()

        remote_id = self.remote_id or self.coordinator.remote_id
        if remote_id is not None:
            try:
                await self._channel.send(CallEndMessage(to=remote_id))
            except ConnectionError as e:
                logger.warning("call:end not sent", extra={"error": str(e)})

        if self.room is not None:
            try:
                await self._channel.send(LeaveRoomMessage(room=self.room))
            except ConnectionError as e:
                logger.warning("room:leave not sent", extra={"error": str(e)})

        try:
            await self.coordinator.reset()
        except Exception as e:
            logger.error("Coordinator reset failed", extra={"error": str(e)}, exc_info=True)

        self.room = None
        self._clear_remote()
        self._clear_chat()
        logger.info("Call ended")
        self.emit("call_ended")

    async def handle_disconnect(self) -> None:
        """Signaling connection lost: drop the call without notifying anyone."""
        logger.info("Signaling connection lost")
        self.room = None
        await self._cleanup_remote()

    async def wait_idle(self) -> None:
        """Wait for every in-flight message handler to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # === Internals ===

    def _learn_peer(self, remote_id: str, display_name: str) -> None:
        self._set_remote(remote_id, display_name or DEFAULT_REMOTE_NAME)
        try:
            self.coordinator.set_peer(remote_id, display_name)
        except ValueError as e:
            logger.warning("Cannot arbitrate with peer", extra={"remote_id": remote_id, "error": str(e)})

    def _set_remote(self, remote_id: str, display_name: str) -> None:
        changed = (remote_id, display_name) != (self.remote_id, self.remote_display_name)
        self.remote_id = remote_id
        self.remote_display_name = display_name
        if changed:
            self.emit("peer", remote_id, display_name)

    def _clear_remote(self) -> None:
        had_tracks = bool(self.remote_tracks)
        self.remote_tracks = []
        if had_tracks:
            self.emit("remote_track", None)
        if self.remote_id is not None:
            self.remote_id = None
            self.remote_display_name = DEFAULT_REMOTE_NAME
            self.emit("peer", None, DEFAULT_REMOTE_NAME)

    def _clear_chat(self) -> None:
        self.chat_messages = []
        self._chat_ids.clear()

    async def _cleanup_remote(self) -> None:
        # Forget the departed peer before suspending so a peer joining
        # during the reset is not wiped afterwards
        self.coordinator.clear_peer()
        self._clear_remote()
        self._clear_chat()
        await self.coordinator.reset()
        self.emit("call_ended")

    def _store_chat(self, message: ChatBroadcastMessage) -> None:
        if message.id in self._chat_ids:
            logger.debug("Duplicate chat message ignored", extra={"message_id": message.id})
            return

        entry = ChatEntry(
            id=message.id,
            sender=message.sender,
            sender_id=message.sender_id,
            text=message.text,
            timestamp=message.timestamp,
            is_local=message.sender_id == self.local_id,
        )
        self._chat_ids.add(entry.id)
        self.chat_messages.append(entry)
        self.emit("chat", entry)

    def _on_remote_track(self, track: Any) -> None:
        self.remote_tracks.append(track)
        self.emit("remote_track", track)

    def _on_listener_error(self, error: Exception) -> None:
        logger.error("Call session listener failed", extra={"error": str(error)}, exc_info=error)
