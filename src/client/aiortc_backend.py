"""aiortc implementations of the peer transport and media provider.

aiortc gathers all local candidates while ``setLocalDescription`` runs and
embeds them in ``local_description``, so it never emits trickle candidates.
Remote trickle candidates (e.g. from browsers) are still applied.
"""

import logging
from typing import Any

import av
from aiortc import (
    AudioStreamTrack,
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from src.client.ice import IceServer
from src.client.media import LocalMediaStream, LocalTrack, MediaConstraints, MediaProvider, TrackKind
from src.client.peer import (
    ConnectionStateCallback,
    IceCandidate,
    IceCandidateCallback,
    PeerConnection,
    SessionDescription,
    TrackCallback,
)
from src.common.errors import MediaAcquisitionError

logger = logging.getLogger(__name__)


# ============================================================================
# Media
# ============================================================================


def _silence(frame: av.AudioFrame) -> av.AudioFrame:
    silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def _black(frame: av.VideoFrame) -> av.VideoFrame:
    black = av.VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    # Y=16 is video black; U/V=128 is neutral chroma
    for index, plane in enumerate(black.planes):
        plane.update(bytes([16 if index == 0 else 128]) * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class SwitchableTrack(MediaStreamTrack):
    """Relays a source track, sending silence or black frames while disabled.

    Keeps the sender's timing intact so the peer sees a muted track rather
    than a stalled one.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, av.AudioFrame):
            return _silence(frame)
        if isinstance(frame, av.VideoFrame):
            return _black(frame)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcMediaProvider(MediaProvider):
    """Media provider backed by aiortc's MediaPlayer.

    With a ``source`` (file, device or URL understood by FFmpeg) tracks come
    from a MediaPlayer; without one, synthetic silence and test-pattern tracks
    are used so headless clients can still negotiate.
    """

    def __init__(
        self,
        source: str | None = None,
        format: str | None = None,
        options: dict[str, str] | None = None,
    ) -> None:
        """Initialize provider.

        Args:
            source: MediaPlayer source (e.g. "/dev/video0", "clip.mp4")
            format: FFmpeg input format (e.g. "v4l2", "avfoundation")
            options: FFmpeg input options
        """
        self._source = source
        self._format = format
        self._options = options or {}

    async def acquire(self, constraints: MediaConstraints) -> LocalMediaStream:
        audio_source: MediaStreamTrack | None
        video_source: MediaStreamTrack | None

        if self._source is not None:
            try:
                player = MediaPlayer(self._source, format=self._format, options=self._options)
            except (OSError, av.error.FFmpegError) as e:
                raise MediaAcquisitionError(f"Cannot open media source {self._source}: {e}") from e
            audio_source, video_source = player.audio, player.video
        else:
            audio_source = AudioStreamTrack() if constraints.audio else None
            video_source = VideoStreamTrack() if constraints.video else None

        stream = LocalMediaStream()
        if constraints.audio and audio_source is not None:
            stream.add_track(LocalTrack(TrackKind.AUDIO, SwitchableTrack(audio_source)))
        if constraints.video and video_source is not None:
            stream.add_track(LocalTrack(TrackKind.VIDEO, SwitchableTrack(video_source)))

        if not stream.get_tracks():
            raise MediaAcquisitionError("No requested media kind is available from the source")

        logger.info(
            "Media acquired",
            extra={"source": self._source or "synthetic", "tracks": len(stream.get_tracks())},
        )
        return stream


# ============================================================================
# Peer connection
# ============================================================================


class AiortcPeerConnection(PeerConnection):
    """PeerConnection on top of aiortc's RTCPeerConnection.

    Keeps one sender per media kind so re-attaching media switches the sent
    track instead of adding transceivers.
    """

    def __init__(self, ice_servers: list[IceServer]) -> None:
        self._configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
                for s in ice_servers
            ]
        )
        self._on_ice_candidate: IceCandidateCallback | None = None
        self._on_track: TrackCallback | None = None
        self._on_connection_state: ConnectionStateCallback | None = None
        self._senders: dict[TrackKind, tuple[RTCRtpSender, LocalTrack | None]] = {}
        self._closed = False
        self._pc = self._create_pc()

    def _create_pc(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.debug("Remote track received", extra={"kind": track.kind})
            if self._on_track is not None and pc is self._pc:
                await self._on_track(track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            logger.debug("Connection state changed", extra={"state": pc.connectionState})
            if self._on_connection_state is not None and pc is self._pc:
                await self._on_connection_state(pc.connectionState)

        return pc

    async def add_track(self, track: LocalTrack) -> None:
        existing = self._senders.get(track.kind)
        if existing is not None:
            sender, _ = existing
            sender.replaceTrack(track.media)
        else:
            sender = self._pc.addTrack(track.media)
        self._senders[track.kind] = (sender, track)

    async def remove_all_tracks(self) -> None:
        for kind, (sender, _) in list(self._senders.items()):
            sender.replaceTrack(None)
            self._senders[kind] = (sender, None)

    @property
    def local_tracks(self) -> list[LocalTrack]:
        return [track for _, track in self._senders.values() if track is not None]

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as e:
            raise ValueError(f"Cannot apply remote {description.type}: {e}") from e

    async def rollback(self) -> None:
        """Discard the outstanding local offer.

        aiortc cannot roll back a local description, so the underlying
        connection is rebuilt with the same local tracks. Only used before any
        media has flowed on the abandoned offer.
        """
        if self._pc.signalingState != "have-local-offer":
            return

        old = self._pc
        tracks = self.local_tracks
        for sender, _ in self._senders.values():
            sender.replaceTrack(None)
        self._senders.clear()

        self._pc = self._create_pc()
        for track in tracks:
            await self.add_track(track)

        await old.close()
        logger.debug("Local offer rolled back", extra={"tracks": len(tracks)})

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        text = candidate.candidate
        if not text:
            # End-of-candidates marker
            return
        if text.startswith("candidate:"):
            text = text[len("candidate:") :]

        try:
            rtc_candidate = candidate_from_sdp(text)
        except (ValueError, IndexError) as e:
            raise ValueError(f"Malformed ICE candidate: {e}") from e

        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_m_line_index

        try:
            await self._pc.addIceCandidate(rtc_candidate)
        except Exception as e:
            raise ValueError(f"Cannot apply ICE candidate: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def on_ice_candidate(self, callback: IceCandidateCallback) -> None:
        self._on_ice_candidate = callback

    def on_track(self, callback: TrackCallback) -> None:
        self._on_track = callback

    def on_connection_state_change(self, callback: ConnectionStateCallback) -> None:
        self._on_connection_state = callback


def create_aiortc_peer(ice_servers: list[IceServer]) -> PeerConnection:
    """PeerConnectionFactory building aiortc transports."""
    return AiortcPeerConnection(ice_servers)
