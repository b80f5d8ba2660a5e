"""Exception hierarchy shared by the signaling server and call client."""


class SignalingError(Exception):
    """Base class for signaling and negotiation errors."""


class RoomFullError(SignalingError):
    """Raised when a join attempt targets a room already at capacity.

    Room-full is terminal for the attempt: callers surface it to the user and
    never retry automatically.
    """

    def __init__(self, room: str, reason: str = "Room is full") -> None:
        self.room = room
        self.reason = reason
        super().__init__(f"{reason}: {room}")


class ProtocolStateError(SignalingError):
    """Raised when a negotiation message arrives in the wrong state."""


class MediaAcquisitionError(SignalingError):
    """Raised when local media cannot be acquired from the media provider."""
