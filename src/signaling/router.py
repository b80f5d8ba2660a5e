"""Relay router for addressed handshake envelopes and room chat.

The router never inspects session descriptions or candidates. It checks
addressing only: a target must be connected and seated in the sender's room,
otherwise the envelope is dropped. Delivery is best-effort and at-most-once.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from src.common.types import DisplayName, JSONPayload, ParticipantID, RoomID
from src.signaling.metrics import MetricsCollector
from src.signaling.protocol import (
    CallAcceptedMessage,
    CallEndedMessage,
    CallIncomingMessage,
    ChatBroadcastMessage,
    RelayedIceCandidateMessage,
    WireModel,
)
from src.signaling.registry import ChatMessage, SessionRegistry

logger = logging.getLogger(__name__)


class SignalingKind(str, Enum):
    """Kinds of addressed handshake envelopes."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CALL_END = "call-end"


@dataclass(frozen=True)
class SignalingEnvelope:
    """Addressed handshake envelope.

    Attributes:
        kind: Envelope kind
        sender: Sender participant id
        to: Target participant id
        payload: Opaque session description or candidate (empty for call-end)
        display_name: Sender display name, forwarded with offers and answers
    """

    kind: SignalingKind
    sender: ParticipantID
    to: ParticipantID
    payload: JSONPayload = field(default_factory=dict)
    display_name: DisplayName = ""


class RelayRouter:
    """Unicast relay for envelopes and room broadcast for chat."""

    def __init__(self, registry: SessionRegistry, metrics: MetricsCollector | None = None) -> None:
        """Initialize router.

        Args:
            registry: Registry used to resolve participants and rooms
            metrics: Optional metrics collector
        """
        self._registry = registry
        self._metrics = metrics

    async def route(self, envelope: SignalingEnvelope) -> bool:
        """Deliver an envelope to its target.

        Args:
            envelope: Addressed envelope

        Returns:
            True if the frame was handed to the target's connection
        """
        sender = self._registry.get_participant(envelope.sender)
        target = self._registry.get_participant(envelope.to)

        if sender is None or sender.room_id is None:
            self._drop(envelope, "sender_not_in_room")
            return False

        if target is None or not target.connection.is_connected:
            self._drop(envelope, "target_unavailable")
            return False

        if target.room_id != sender.room_id:
            self._drop(envelope, "target_not_in_room")
            return False

        message = self._to_message(envelope)
        delivered = await target.connection.send(message)

        if delivered:
            logger.debug(
                "Envelope relayed",
                extra={
                    "kind": envelope.kind.value,
                    "sender": envelope.sender,
                    "to": envelope.to,
                    "room": sender.room_id,
                },
            )
            if self._metrics is not None:
                self._metrics.record_relay(envelope.kind.value)
        else:
            self._drop(envelope, "send_failed")

        return delivered

    async def broadcast_chat(self, room_id: RoomID, message: ChatMessage) -> int:
        """Deliver a stored chat message to every member, sender included.

        Args:
            room_id: Room identifier
            message: Stored chat message

        Returns:
            Number of members the message was handed to
        """
        frame = ChatBroadcastMessage(
            id=message.id,
            sender=message.sender,
            sender_id=message.sender_id,
            text=message.text,
            timestamp=message.timestamp,
        )

        delivered = 0
        for member in self._registry.lookup(room_id):
            if await member.connection.send(frame):
                delivered += 1

        if self._metrics is not None:
            self._metrics.record_chat()

        logger.debug(
            "Chat broadcast",
            extra={"room": room_id, "message_id": message.id, "delivered": delivered},
        )
        return delivered

    @staticmethod
    def _to_message(envelope: SignalingEnvelope) -> WireModel:
        """Map an envelope to the frame the target receives."""
        match envelope.kind:
            case SignalingKind.OFFER:
                return CallIncomingMessage(
                    sender=envelope.sender,
                    sdp_offer=envelope.payload,
                    display_name=envelope.display_name,
                )
            case SignalingKind.ANSWER:
                return CallAcceptedMessage(
                    sender=envelope.sender,
                    sdp_answer=envelope.payload,
                    display_name=envelope.display_name,
                )
            case SignalingKind.ICE_CANDIDATE:
                return RelayedIceCandidateMessage(
                    sender=envelope.sender,
                    candidate=envelope.payload,
                )
            case SignalingKind.CALL_END:
                return CallEndedMessage(sender=envelope.sender)

    def _drop(self, envelope: SignalingEnvelope, reason: str) -> None:
        logger.debug(
            "Envelope dropped",
            extra={
                "kind": envelope.kind.value,
                "sender": envelope.sender,
                "to": envelope.to,
                "reason": reason,
            },
        )
        if self._metrics is not None:
            self._metrics.record_drop(reason)

