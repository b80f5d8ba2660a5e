"""Common type aliases for the call signaling project.

These aliases improve code readability and type safety across the codebase.
They represent domain concepts shared by the signaling server and the call
client.

The type system distinguishes between:
- Identity types: participant and room identifiers
- Chat types: message identifiers
- Wire types: opaque JSON payloads relayed between clients

Example:
    >>> from src.common.types import ParticipantID, RoomID
    >>> participant: ParticipantID = "p-3f2a9c41d07e"
    >>> room: RoomID = "standup"
"""

from typing import Any, TypeAlias

# Identity types
ParticipantID: TypeAlias = str
"""Unique per-connection participant identifier.

Assigned by the signaling server when a WebSocket connection is accepted and
announced to the client in the ``session:start`` message. Identifiers are
compared with plain string ordering for role arbitration, so the same pair of
ids always yields the same offerer on both clients.

Example:
    >>> local: ParticipantID = "p-0a1b2c3d4e5f"
    >>> remote: ParticipantID = "p-f5e4d3c2b1a0"
    >>> local < remote  # local side makes the offer
    True
"""

RoomID: TypeAlias = str
"""Room (session) identifier chosen by the users.

Room ids are opaque strings; the registry trims surrounding whitespace before
using them, so ``" r1 "`` and ``"r1"`` name the same room.
"""

DisplayName: TypeAlias = str
"""Human-readable participant name shown to the other side."""

# Chat types
MessageID: TypeAlias = int
"""Monotonic chat message identifier assigned by the server.

Clients use it to suppress duplicate deliveries of the same message.
"""

# Wire types
JSONPayload: TypeAlias = dict[str, Any]
"""Opaque JSON object relayed by the server without semantic validation.

Session descriptions and ICE candidates travel as JSON payloads. The server
never inspects them; clients parse and validate them on receipt.
"""
