"""Common utilities and type definitions.

This package provides shared types, exceptions and logging setup used by both
the signaling server and the call client.
"""

from src.common.errors import (
    MediaAcquisitionError,
    ProtocolStateError,
    RoomFullError,
    SignalingError,
)
from src.common.types import (
    DisplayName,
    JSONPayload,
    MessageID,
    ParticipantID,
    RoomID,
)

__all__ = [
    "DisplayName",
    "JSONPayload",
    "MediaAcquisitionError",
    "MessageID",
    "ParticipantID",
    "ProtocolStateError",
    "RoomFullError",
    "RoomID",
    "SignalingError",
]
