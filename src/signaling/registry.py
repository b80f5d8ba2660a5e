"""Room membership registry.

Tracks which participants are in which room, enforces the two-party cap and
keeps each room's ephemeral chat history. Membership changes are broadcast to
the other members of the affected room.

All membership checks and mutations happen without suspending, so concurrent
joins handled by the event loop can never push a room past its capacity.
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.common.errors import RoomFullError
from src.common.types import DisplayName, MessageID, ParticipantID, RoomID
from src.signaling.metrics import MetricsCollector
from src.signaling.protocol import UserJoinedMessage, UserLeftMessage, WireModel
from src.signaling.transport.base import ParticipantConnection

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Participant:
    """A connected client.

    Created when a connection is accepted and discarded when it closes.
    """

    connection: ParticipantConnection
    display_name: DisplayName = "Anonymous"
    room_id: RoomID | None = None

    @property
    def id(self) -> ParticipantID:
        """Participant id (the connection id)."""
        return self.connection.participant_id


@dataclass
class ChatMessage:
    """Chat message stored in a room's history."""

    id: MessageID
    sender: DisplayName
    sender_id: ParticipantID
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Room:
    """A call session pairing at most two participants."""

    id: RoomID
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    members: list[Participant] = field(default_factory=list)
    chat_history: deque[ChatMessage] = field(default_factory=deque)

    def has_member(self, participant_id: ParticipantID) -> bool:
        """Check whether a participant id belongs to this room."""
        return any(member.id == participant_id for member in self.members)


class SessionRegistry:
    """Room registry enforcing the participant cap.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        max_participants: int = 2,
        chat_history_limit: int = 500,
        evict_chat_history_when_empty: bool = False,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize registry.

        Args:
            max_participants: Members allowed per room
            chat_history_limit: Chat messages kept per room
            evict_chat_history_when_empty: Drop history with the last member
            metrics: Optional metrics collector for occupancy gauges
        """
        self.max_participants = max_participants
        self.chat_history_limit = chat_history_limit
        self.evict_chat_history_when_empty = evict_chat_history_when_empty
        self._metrics = metrics

        self._rooms: dict[str, Room] = {}
        self._participants: dict[str, Participant] = {}
        self._message_ids = itertools.count(1)

    # === Connected participants ===

    def register(self, participant: Participant) -> None:
        """Track a newly connected participant."""
        self._participants[participant.id] = participant

    def unregister(self, participant: Participant) -> None:
        """Forget a disconnected participant.

        The participant must already have left its room.
        """
        self._participants.pop(participant.id, None)

    def get_participant(self, participant_id: ParticipantID) -> Participant | None:
        """Get a connected participant by id."""
        return self._participants.get(participant_id)

    @property
    def connection_count(self) -> int:
        """Number of connected participants."""
        return len(self._participants)

    # === Rooms ===

    @staticmethod
    def normalize_room_id(room_id: str) -> str:
        """Trim a room id.

        Raises:
            ValueError: If the id is empty after trimming
        """
        normalized = room_id.strip()
        if not normalized:
            raise ValueError("Room id must not be empty")
        return normalized

    @property
    def room_count(self) -> int:
        """Number of rooms currently held in memory."""
        return len(self._rooms)

    @property
    def participant_count(self) -> int:
        """Number of participants currently in a room."""
        return sum(len(room.members) for room in self._rooms.values())

    def get_room(self, room_id: str) -> Room | None:
        """Get a room by (normalized) id."""
        return self._rooms.get(room_id.strip())

    def lookup(self, room_id: RoomID) -> tuple[Participant, ...]:
        """Membership snapshot of a room (empty for unknown rooms)."""
        room = self.get_room(room_id)
        if room is None:
            return ()
        return tuple(room.members)

    async def join(self, room_id: RoomID, participant: Participant) -> tuple[Participant, ...]:
        """Add a participant to a room, creating the room on first join.

        A participant already in another room leaves it first. Existing members
        are told about the newcomer with ``user:joined``.

        Args:
            room_id: Room identifier (trimmed before use)
            participant: Joining participant

        Returns:
            Full membership after the join, joiner included

        Raises:
            RoomFullError: If the room is at capacity (nothing is changed)
            ValueError: If the room id is empty
        """
        room_id = self.normalize_room_id(room_id)

        if participant.room_id == room_id:
            return self.lookup(room_id)

        room = self._rooms.get(room_id)
        if room is not None and len(room.members) >= self.max_participants:
            logger.info(
                "Join rejected, room full",
                extra={"room": room_id, "participant_id": participant.id},
            )
            raise RoomFullError(room_id)

        previous = self._detach(participant)

        if room is None:
            room = Room(id=room_id, chat_history=deque(maxlen=self.chat_history_limit))
            self._rooms[room_id] = room
            logger.info("Room created", extra={"room": room_id})

        others = tuple(room.members)
        room.members.append(participant)
        participant.room_id = room_id
        members = tuple(room.members)
        self._update_stats()

        logger.info(
            "Participant joined room",
            extra={
                "room": room_id,
                "participant_id": participant.id,
                "display_name": participant.display_name,
                "member_count": len(members),
            },
        )

        if previous is not None:
            _, remaining = previous
            await self._broadcast(
                remaining,
                UserLeftMessage(id=participant.id, display_name=participant.display_name),
            )

        await self._broadcast(
            others,
            UserJoinedMessage(id=participant.id, display_name=participant.display_name),
        )

        return members

    async def leave(self, room_id: RoomID, participant: Participant) -> tuple[Participant, ...]:
        """Remove a participant from a room and tell the remaining members.

        Leaving a room the participant is not in is a no-op.

        Args:
            room_id: Room identifier
            participant: Leaving participant

        Returns:
            Remaining membership of the room
        """
        room_id = self.normalize_room_id(room_id)
        if participant.room_id != room_id:
            return self.lookup(room_id)

        return await self.leave_current(participant)

    async def leave_current(self, participant: Participant) -> tuple[Participant, ...]:
        """Remove a participant from whatever room it is in.

        Used on explicit leave without a room id and on disconnect.

        Returns:
            Remaining membership of the room that was left (empty if none)
        """
        detached = self._detach(participant)
        if detached is None:
            return ()

        _, remaining = detached
        await self._broadcast(
            remaining,
            UserLeftMessage(id=participant.id, display_name=participant.display_name),
        )
        return remaining

    def record_chat(self, room_id: str, sender: Participant, text: str) -> ChatMessage:
        """Append a chat message to a room's history.

        Args:
            room_id: Room identifier
            sender: Sending participant (must be a member)
            text: Message text

        Returns:
            Stored message with its monotonic id

        Raises:
            KeyError: If the room does not exist
            PermissionError: If the sender is not a member of the room
        """
        room = self._rooms[self.normalize_room_id(room_id)]
        if not room.has_member(sender.id):
            raise PermissionError(f"Participant {sender.id} is not in room {room.id}")

        message = ChatMessage(
            id=next(self._message_ids),
            sender=sender.display_name,
            sender_id=sender.id,
            text=text,
        )
        room.chat_history.append(message)
        return message

    def chat_history(self, room_id: str) -> list[ChatMessage]:
        """Chat history of a room, oldest first."""
        room = self.get_room(room_id)
        if room is None:
            return []
        return list(room.chat_history)

    def _detach(self, participant: Participant) -> tuple[Room, tuple[Participant, ...]] | None:
        """Remove a participant from its room without notifying anyone."""
        if participant.room_id is None:
            return None

        room = self._rooms.get(participant.room_id)
        participant.room_id = None
        if room is None or participant not in room.members:
            return None

        room.members.remove(participant)
        logger.info(
            "Participant left room",
            extra={
                "room": room.id,
                "participant_id": participant.id,
                "member_count": len(room.members),
            },
        )

        if not room.members:
            if self._metrics is not None:
                lifetime = (datetime.now(UTC) - room.created_at).total_seconds()
                self._metrics.record_room_emptied(lifetime)

            if not room.chat_history or self.evict_chat_history_when_empty:
                del self._rooms[room.id]
                logger.info("Room discarded", extra={"room": room.id})

        self._update_stats()
        return room, tuple(room.members)

    def _update_stats(self) -> None:
        if self._metrics is not None:
            self._metrics.set_room_stats(self.room_count, self.participant_count)

    async def _broadcast(self, members: tuple[Participant, ...], message: WireModel) -> None:
        """Send a membership event to each member."""
        for member in members:
            await member.connection.send(message)
