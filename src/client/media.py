"""Local media model consumed by the call client.

Capture itself lives behind MediaProvider; the client only needs tracks it can
attach to a peer connection, enable or disable, and stop.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TrackKind(str, Enum):
    """Media track kinds."""

    AUDIO = "audio"
    VIDEO = "video"


class MediaConstraints(BaseModel):
    """Which local media the user wants to send."""

    audio: bool = Field(default=True, description="Send microphone audio")
    video: bool = Field(default=True, description="Send camera video")

    def to_request(self) -> "MediaConstraints":
        """Constraints actually requested from the provider.

        A stream with no tracks cannot be negotiated, so when both kinds are
        disabled audio is still requested (and disabled after acquisition).
        """
        if not self.audio and not self.video:
            return MediaConstraints(audio=True, video=False)
        return self


class LocalTrack:
    """A captured local track.

    ``media`` is the provider's underlying track object. Toggling ``enabled``
    is forwarded to it when it supports the attribute.
    """

    def __init__(self, kind: TrackKind, media: Any = None, label: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.kind = kind
        self.media = media
        self.label = label
        self._enabled = True
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value
        if self.media is not None and hasattr(self.media, "enabled"):
            self.media.enabled = value

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop capture. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        if self.media is not None:
            self.media.stop()

    def __repr__(self) -> str:
        return f"LocalTrack(kind={self.kind.value}, enabled={self._enabled}, stopped={self._stopped})"


class LocalMediaStream:
    """Group of local tracks acquired together."""

    def __init__(self, tracks: list[LocalTrack] | None = None) -> None:
        self.id = uuid.uuid4().hex
        self._tracks: list[LocalTrack] = list(tracks or [])

    def get_tracks(self) -> list[LocalTrack]:
        return list(self._tracks)

    @property
    def audio_tracks(self) -> list[LocalTrack]:
        return [t for t in self._tracks if t.kind is TrackKind.AUDIO]

    @property
    def video_tracks(self) -> list[LocalTrack]:
        return [t for t in self._tracks if t.kind is TrackKind.VIDEO]

    def add_track(self, track: LocalTrack) -> None:
        self._tracks.append(track)

    def stop(self) -> None:
        """Stop every track."""
        for track in self._tracks:
            track.stop()


class MediaProvider(ABC):
    """Media-capability provider (camera, microphone, files, synthetic)."""

    @abstractmethod
    async def acquire(self, constraints: MediaConstraints) -> LocalMediaStream:
        """Acquire local media.

        Args:
            constraints: Kinds to capture

        Returns:
            Stream holding one track per requested kind

        Raises:
            MediaAcquisitionError: If capture cannot be started
        """
        pass


async def acquire_local_media(
    provider: MediaProvider, constraints: MediaConstraints
) -> LocalMediaStream:
    """Acquire media honoring the user's constraints.

    Kinds the user disabled but that had to be requested anyway are acquired
    with their tracks disabled.

    Raises:
        MediaAcquisitionError: If the provider fails
    """
    stream = await provider.acquire(constraints.to_request())

    if not constraints.audio:
        for track in stream.audio_tracks:
            track.enabled = False
    if not constraints.video:
        for track in stream.video_tracks:
            track.enabled = False

    logger.debug(
        "Local media acquired",
        extra={
            "audio_tracks": len(stream.audio_tracks),
            "video_tracks": len(stream.video_tracks),
        },
    )
    return stream
