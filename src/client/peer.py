"""Peer transport abstraction used by the negotiation coordinator.

The coordinator drives a PeerConnection through offer/answer and candidate
exchange without depending on a specific WebRTC stack. Session descriptions
and candidates cross the signaling relay as the JSON objects produced by
``to_payload``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from src.client.ice import IceServer
from src.client.media import LocalTrack
from src.common.types import JSONPayload


class SessionDescription(BaseModel):
    """Offer or answer exchanged during negotiation."""

    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str = ""

    def to_payload(self) -> JSONPayload:
        """Wire form relayed as ``sdpOffer`` / ``sdpAnswer``."""
        return self.model_dump()

    @classmethod
    def from_payload(cls, payload: JSONPayload) -> "SessionDescription":
        """Parse a relayed description.

        Raises:
            pydantic.ValidationError: If the payload is not a description
        """
        return cls.model_validate(payload)


class IceCandidate(BaseModel):
    """Network path candidate exchanged after the descriptions."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_m_line_index: int | None = Field(default=None, alias="sdpMLineIndex")

    def to_payload(self) -> JSONPayload:
        """Wire form relayed as ``candidate``."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_payload(cls, payload: JSONPayload) -> "IceCandidate":
        """Parse a relayed candidate.

        Raises:
            pydantic.ValidationError: If the payload is not a candidate
        """
        return cls.model_validate(payload)


IceCandidateCallback: TypeAlias = Callable[[IceCandidate], Awaitable[None]]
TrackCallback: TypeAlias = Callable[[Any], Awaitable[None]]
ConnectionStateCallback: TypeAlias = Callable[[str], Awaitable[None]]


class PeerConnection(ABC):
    """Direct peer media transport.

    One instance is owned by exactly one coordinator; it is closed and
    replaced as a whole, never reused after ``close``.
    """

    @abstractmethod
    async def add_track(self, track: LocalTrack) -> None:
        """Send a local track to the peer.

        A sender already carrying a track of the same kind is switched to the
        new track instead of adding a second sender.
        """
        pass

    @abstractmethod
    async def remove_all_tracks(self) -> None:
        """Detach every local track from its sender."""
        pass

    @property
    @abstractmethod
    def local_tracks(self) -> list[LocalTrack]:
        """Local tracks currently attached to a sender."""
        pass

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """Applied local description, as it should be sent to the peer.

        May differ from the generated one (e.g. with gathered candidates).
        """
        pass

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Generate an offer for the current set of tracks."""
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Generate an answer to the applied remote offer."""
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a locally generated description."""
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply a description received from the peer.

        Raises:
            ValueError: If the description is not valid in the current state
        """
        pass

    @abstractmethod
    async def rollback(self) -> None:
        """Abandon an outstanding local offer and return to ``stable``."""
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote candidate.

        Raises:
            ValueError: If the candidate cannot be parsed or applied
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """WebRTC signaling state (stable, have-local-offer, ..., closed)."""
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """WebRTC connection state (new, connecting, connected, ..., closed)."""
        pass

    @abstractmethod
    def on_ice_candidate(self, callback: IceCandidateCallback) -> None:
        """Register the handler for locally gathered candidates."""
        pass

    @abstractmethod
    def on_track(self, callback: TrackCallback) -> None:
        """Register the handler for remote tracks."""
        pass

    @abstractmethod
    def on_connection_state_change(self, callback: ConnectionStateCallback) -> None:
        """Register the handler for connection state changes."""
        pass


PeerConnectionFactory: TypeAlias = Callable[[list[IceServer]], PeerConnection]
"""Builds a fresh transport from the current ICE server list."""
