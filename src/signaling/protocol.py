"""Signaling wire protocol definitions.

Defines Pydantic models for the JSON frames exchanged over the signaling
WebSocket. Every frame carries a ``type`` discriminator and camelCase fields;
client and server frames form two closed tagged unions that are matched
exhaustively by the server and the call client.

Session descriptions and ICE candidates are relayed as opaque JSON objects:
the server validates addressing only, never payload semantics.
"""

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from src.common.types import DisplayName, JSONPayload, ParticipantID, RoomID


class WireModel(BaseModel):
    """Base model for signaling frames (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> str:
        """Serialize the frame using wire aliases."""
        return self.model_dump_json(by_alias=True)


# ============================================================================
# Client → Server
# ============================================================================


class JoinRoomMessage(WireModel):
    """Client → Server: join (or create) a room."""

    type: Literal["room:join"] = "room:join"
    room: str = Field(..., min_length=1, max_length=128, description="Room identifier")
    display_name: str = Field(default="Anonymous", max_length=64, description="Shown to the peer")


class LeaveRoomMessage(WireModel):
    """Client → Server: leave the current room."""

    type: Literal["room:leave"] = "room:leave"
    room: RoomID | None = Field(default=None, description="Room to leave (defaults to current)")


class CallOfferMessage(WireModel):
    """Client → Server: session description offer addressed to a peer."""

    type: Literal["call:offer"] = "call:offer"
    to: str = Field(..., min_length=1, description="Target participant id")
    sdp_offer: JSONPayload = Field(..., description="Opaque session description")
    display_name: DisplayName = Field(default="", description="Caller display name")


class CallAnswerMessage(WireModel):
    """Client → Server: session description answer addressed to a peer."""

    type: Literal["call:answer"] = "call:answer"
    to: str = Field(..., min_length=1, description="Target participant id")
    sdp_answer: JSONPayload = Field(..., description="Opaque session description")
    display_name: DisplayName = Field(default="", description="Callee display name")


class IceCandidateMessage(WireModel):
    """Client → Server: ICE candidate addressed to a peer."""

    type: Literal["ice:candidate"] = "ice:candidate"
    to: str = Field(..., min_length=1, description="Target participant id")
    candidate: JSONPayload = Field(..., description="Opaque ICE candidate")


class CallEndMessage(WireModel):
    """Client → Server: tell the peer the call is over."""

    type: Literal["call:end"] = "call:end"
    to: str = Field(..., min_length=1, description="Target participant id")


class ChatSendMessage(WireModel):
    """Client → Server: chat text for everyone in the room."""

    type: Literal["chat:message"] = "chat:message"
    room: str = Field(..., min_length=1, description="Room identifier")
    text: str = Field(..., min_length=1, description="Message text")
    display_name: str = Field(default="Anonymous", max_length=64, description="Sender name")


# ============================================================================
# Server → Client
# ============================================================================


class Member(WireModel):
    """Room member entry."""

    id: ParticipantID
    display_name: DisplayName


class SessionStartMessage(WireModel):
    """Server → Client: connection accepted, carries the participant id."""

    type: Literal["session:start"] = "session:start"
    id: ParticipantID = Field(..., description="Participant id assigned to this connection")


class RoomJoinedMessage(WireModel):
    """Server → Client: join accepted, full membership including the joiner."""

    type: Literal["room:joined"] = "room:joined"
    room: RoomID
    members: list[Member]


class RoomFullMessage(WireModel):
    """Server → Client: join rejected because the room is at capacity."""

    type: Literal["room:full"] = "room:full"
    room: RoomID
    reason: str = "Room is full"


class UserJoinedMessage(WireModel):
    """Server → Broadcast: another participant joined the room."""

    type: Literal["user:joined"] = "user:joined"
    id: ParticipantID
    display_name: DisplayName


class UserLeftMessage(WireModel):
    """Server → Broadcast: a participant left the room or disconnected."""

    type: Literal["user:left"] = "user:left"
    id: ParticipantID
    display_name: DisplayName


class CallIncomingMessage(WireModel):
    """Server → Client: relayed offer."""

    type: Literal["call:incoming"] = "call:incoming"
    sender: ParticipantID = Field(..., alias="from")
    sdp_offer: JSONPayload
    display_name: DisplayName = ""


class CallAcceptedMessage(WireModel):
    """Server → Client: relayed answer."""

    type: Literal["call:accepted"] = "call:accepted"
    sender: ParticipantID = Field(..., alias="from")
    sdp_answer: JSONPayload
    display_name: DisplayName = ""


class RelayedIceCandidateMessage(WireModel):
    """Server → Client: relayed ICE candidate."""

    type: Literal["ice:candidate"] = "ice:candidate"
    sender: ParticipantID = Field(..., alias="from")
    candidate: JSONPayload


class CallEndedMessage(WireModel):
    """Server → Client: the peer ended the call."""

    type: Literal["call:ended"] = "call:ended"
    sender: ParticipantID = Field(..., alias="from")


class ChatBroadcastMessage(WireModel):
    """Server → Broadcast: stored chat message."""

    type: Literal["chat:message"] = "chat:message"
    id: int = Field(..., ge=1, description="Monotonic message id")
    sender: str = Field(..., description="Sender display name")
    sender_id: ParticipantID = Field(default="", description="Sender participant id")
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ErrorMessage(WireModel):
    """Server → Client: request could not be served."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


# Union type for all client → server messages
ClientMessage = Annotated[
    JoinRoomMessage
    | LeaveRoomMessage
    | CallOfferMessage
    | CallAnswerMessage
    | IceCandidateMessage
    | CallEndMessage
    | ChatSendMessage,
    Field(discriminator="type"),
]

# Union type for all server → client messages
ServerMessage = Annotated[
    SessionStartMessage
    | RoomJoinedMessage
    | RoomFullMessage
    | UserJoinedMessage
    | UserLeftMessage
    | CallIncomingMessage
    | CallAcceptedMessage
    | RelayedIceCandidateMessage
    | CallEndedMessage
    | ChatBroadcastMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse a client frame.

    Args:
        raw: JSON text frame

    Returns:
        The matching client message model

    Raises:
        pydantic.ValidationError: If the frame is malformed or of unknown type
    """
    return _client_adapter.validate_json(raw)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    """Parse a server frame.

    Args:
        raw: JSON text frame

    Returns:
        The matching server message model

    Raises:
        pydantic.ValidationError: If the frame is malformed or of unknown type
    """
    return _server_adapter.validate_json(raw)
