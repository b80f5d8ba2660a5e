"""Peer negotiation coordinator.

Drives the offer/answer/candidate handshake for one call over a best-effort,
unordered signaling relay. Two independently scheduled clients run this
coordinator against each other with no shared clock, so every decision is
made from local state only:

- Role arbitration: the participant with the smaller id (plain string
  ordering) makes the offer, after a short debounce.
- Glare: if offers cross, the smaller id's offer wins. The larger-id side
  rolls back its own offer and answers; the smaller-id side keeps its offer
  and re-sends it.
- Candidate buffering: remote candidates are queued until the remote
  description is applied, then applied once each, in arrival order.
- Staleness: every negotiation round captures the state generation at its
  start and discards its results if ``reset()`` ran in the meantime.

Call phases (validated transitions):
    IDLE → ARBITRATING → OFFERING | ANSWERING → ESTABLISHED → CLOSED
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from src.client.ice import IceServerProvider, StaticIceServerProvider
from src.client.media import (
    LocalMediaStream,
    LocalTrack,
    MediaConstraints,
    MediaProvider,
    acquire_local_media,
)
from src.client.peer import IceCandidate, PeerConnection, PeerConnectionFactory, SessionDescription
from src.client.signaling_client import SignalingChannel
from src.common.errors import ProtocolStateError
from src.common.types import JSONPayload
from src.signaling.protocol import CallAnswerMessage, CallOfferMessage, IceCandidateMessage

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_NAME = "Remote User"


class SignalingState(str, Enum):
    """Offer/answer state of the local side."""

    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    CLOSED = "closed"


class CallPhase(str, Enum):
    """Call lifecycle phase."""

    IDLE = "idle"  # No peer known
    ARBITRATING = "arbitrating"  # Peer known, roles decided, auto-call pending
    OFFERING = "offering"  # Local offer round in progress
    ANSWERING = "answering"  # Answering a remote offer
    ESTABLISHED = "established"  # Offer/answer completed at least once
    CLOSED = "closed"  # Torn down (terminal for this state instance)


# Valid phase transitions (from_phase -> {allowed_to_phases})
VALID_TRANSITIONS: dict[CallPhase, set[CallPhase]] = {
    CallPhase.IDLE: {CallPhase.ARBITRATING, CallPhase.ANSWERING, CallPhase.CLOSED},
    CallPhase.ARBITRATING: {
        CallPhase.OFFERING,
        CallPhase.ANSWERING,
        CallPhase.IDLE,
        CallPhase.CLOSED,
    },
    CallPhase.OFFERING: {
        CallPhase.ESTABLISHED,  # Answer applied (or renegotiation failed)
        CallPhase.ANSWERING,  # Lost glare, answering the peer's offer
        CallPhase.ARBITRATING,  # Initial offer failed, may retry
        CallPhase.IDLE,
        CallPhase.CLOSED,
    },
    CallPhase.ANSWERING: {
        CallPhase.ESTABLISHED,
        CallPhase.ARBITRATING,  # Answer failed
        CallPhase.IDLE,
        CallPhase.CLOSED,
    },
    CallPhase.ESTABLISHED: {
        CallPhase.OFFERING,  # Renegotiation from this side
        CallPhase.ANSWERING,  # Renegotiation from the peer
        CallPhase.IDLE,
        CallPhase.CLOSED,
    },
    CallPhase.CLOSED: set(),
}


def is_offerer(local_id: str, remote_id: str) -> bool:
    """Decide whether the local side makes the offer.

    Deterministic and symmetric: for any two distinct ids exactly one side
    gets True.

    Raises:
        ValueError: If the ids are equal
    """
    if local_id == remote_id:
        raise ValueError(f"Local and remote participant ids must differ, both are {local_id!r}")
    return local_id < remote_id


@dataclass
class NegotiationState:
    """Per-call negotiation state. Replaced as a whole by ``reset()``."""

    generation: int
    phase: CallPhase = CallPhase.IDLE
    signaling_state: SignalingState = SignalingState.STABLE
    remote_id: str | None = None
    remote_display_name: str = DEFAULT_REMOTE_NAME
    remote_description_set: bool = False
    ice_candidate_queue: deque[IceCandidate] = field(default_factory=deque)
    has_initiated_call: bool = False
    is_processing_call: bool = False
    applying_answer: bool = False
    flushing_candidates: bool = False
    renegotiation_pending: bool = False
    pending_offer: SessionDescription | None = None
    last_remote_offer_sdp: str | None = None


class _StaleNegotiation(Exception):
    """The round's state was replaced while it was suspended."""


class NegotiationCoordinator(AsyncIOEventEmitter):
    """Owns the peer transport and the handshake state machine for one client.

    Events (pyee):
        ready: A fresh idle state and transport slot are in place after reset
        phase: (CallPhase) the call phase changed
        track: (remote track) media arrived from the peer
        connection_state: (str) the transport's connection state changed

    Thread-safety: Not thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        peer_factory: PeerConnectionFactory,
        media_provider: MediaProvider,
        ice_provider: IceServerProvider | None = None,
        constraints: MediaConstraints | None = None,
        local_id: str | None = None,
        display_name: str = "Anonymous",
        debounce_s: float = 0.5,
    ) -> None:
        """Initialize coordinator.

        Args:
            channel: Signaling channel for offers, answers and candidates
            peer_factory: Builds a peer transport from ICE servers
            media_provider: Source of local media
            ice_provider: ICE server source (public STUN when omitted)
            constraints: Local media the user wants to send
            local_id: Local participant id (may be set later)
            display_name: Name sent along with offers and answers
            debounce_s: Delay before the offerer auto-calls
        """
        super().__init__()
        self._channel = channel
        self._peer_factory = peer_factory
        self._media_provider = media_provider
        self._ice_provider = ice_provider or StaticIceServerProvider()
        self.constraints = constraints or MediaConstraints()
        self.local_id = local_id
        self.display_name = display_name
        self.debounce_s = debounce_s

        self._state = NegotiationState(generation=0)
        self._peer: PeerConnection | None = None
        self._peer_lock = asyncio.Lock()
        self._local_stream: LocalMediaStream | None = None
        self._media_lock = asyncio.Lock()
        self._media_epoch = 0
        self._auto_call_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[bool]] = set()

        self.on("error", self._on_listener_error)

    # === Accessors ===

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def phase(self) -> CallPhase:
        return self._state.phase

    @property
    def signaling_state(self) -> SignalingState:
        return self._state.signaling_state

    @property
    def remote_id(self) -> str | None:
        return self._state.remote_id

    @property
    def peer(self) -> PeerConnection | None:
        """Current peer transport (None until the first round needs it)."""
        return self._peer

    @property
    def local_stream(self) -> LocalMediaStream | None:
        return self._local_stream

    # === Role arbitration ===

    def set_peer(self, remote_id: str, display_name: str = "") -> None:
        """Learn about the other participant and arbitrate roles.

        When the local side is the offerer, ``initiate_call()`` runs after the
        debounce unless the phase has moved on by then.

        Raises:
            ProtocolStateError: If the local id is not known yet
            ValueError: If the remote id equals the local id
        """
        if self.local_id is None:
            raise ProtocolStateError("Local participant id is not known yet")

        offerer = is_offerer(self.local_id, remote_id)
        state = self._state

        if state.remote_id is not None and state.remote_id != remote_id:
            logger.warning(
                "Replacing known peer without reset",
                extra={"previous": state.remote_id, "remote_id": remote_id},
            )

        state.remote_id = remote_id
        state.remote_display_name = display_name or DEFAULT_REMOTE_NAME

        if state.phase is not CallPhase.IDLE:
            return

        state.has_initiated_call = False
        self._transition(state, CallPhase.ARBITRATING)

        logger.info(
            "Peer arbitrated",
            extra={"local_id": self.local_id, "remote_id": remote_id, "offerer": offerer},
        )

        if offerer:
            self._cancel_auto_call()
            self._auto_call_task = asyncio.create_task(self._auto_call(state))

    def clear_peer(self) -> None:
        """Forget the remote participant and cancel a pending auto-call."""
        self._cancel_auto_call()
        state = self._state
        state.remote_id = None
        state.remote_display_name = DEFAULT_REMOTE_NAME
        if state.phase is CallPhase.ARBITRATING:
            self._transition(state, CallPhase.IDLE)

    async def _auto_call(self, state: NegotiationState) -> None:
        await asyncio.sleep(self.debounce_s)
        if state is not self._state or state.phase is not CallPhase.ARBITRATING:
            return
        # Past the debounce the round is no longer cancellable, only stale
        self._auto_call_task = None
        await self.initiate_call()

    def _cancel_auto_call(self) -> None:
        if self._auto_call_task is not None and not self._auto_call_task.done():
            self._auto_call_task.cancel()
        self._auto_call_task = None

    # === Offer side ===

    async def initiate_call(self) -> bool:
        """Send an offer to the known peer.

        Returns:
            True if an offer was sent
        """
        state = self._state
        if state.is_processing_call or state.has_initiated_call:
            logger.debug(
                "Call already in progress, not initiating",
                extra={
                    "is_processing_call": state.is_processing_call,
                    "has_initiated_call": state.has_initiated_call,
                },
            )
            return False

        if state.remote_id is None:
            logger.warning("No remote participant, cannot call")
            return False

        return await self._run_offer_round(state, initial=True)

    async def renegotiate(self, track: LocalTrack) -> bool:
        """Add a track mid-call and re-offer from this side.

        Before the call is established the track simply joins the upcoming
        negotiation. While a round is in flight the re-offer is deferred until
        it completes.

        Returns:
            True if a new offer was sent now
        """
        state = self._state
        generation = state.generation

        try:
            peer = await self._ensure_peer(generation)
            await peer.add_track(track)
            self._check(generation)
        except _StaleNegotiation:
            return False

        if self._local_stream is not None and track not in self._local_stream.get_tracks():
            self._local_stream.add_track(track)

        if state.phase in (CallPhase.IDLE, CallPhase.ARBITRATING):
            logger.debug("Track added before call started", extra={"kind": track.kind.value})
            return False

        if (
            state.phase is not CallPhase.ESTABLISHED
            or state.is_processing_call
            or state.applying_answer
            or state.signaling_state is SignalingState.HAVE_LOCAL_OFFER
        ):
            state.renegotiation_pending = True
            logger.info("Renegotiation deferred until current round completes")
            return False

        return await self._run_offer_round(state, initial=False)

    async def _run_offer_round(self, state: NegotiationState, initial: bool) -> bool:
        generation = state.generation
        fallback = CallPhase.ESTABLISHED if state.phase is CallPhase.ESTABLISHED else CallPhase.ARBITRATING
        remote_id = state.remote_id
        if remote_id is None:
            logger.warning("No remote participant, cannot offer")
            return False

        state.is_processing_call = True
        if initial:
            state.has_initiated_call = True
        state.renegotiation_pending = False
        self._transition(state, CallPhase.OFFERING)

        try:
            peer = await self._attach_local_media(generation)

            offer = await peer.create_offer()
            self._check(generation)
            await peer.set_local_description(offer)
            self._check(generation)

            local = peer.local_description or offer
            state.signaling_state = SignalingState.HAVE_LOCAL_OFFER
            state.pending_offer = local

            try:
                await self._channel.send(
                    CallOfferMessage(
                        to=remote_id,
                        sdp_offer=local.to_payload(),
                        display_name=self.display_name,
                    )
                )
            except Exception:
                if state is self._state:
                    await self._abandon_local_offer(state, peer)
                raise

            logger.info(
                "Offer sent",
                extra={"remote_id": remote_id, "renegotiation": not initial},
            )
            return True

        except _StaleNegotiation:
            logger.debug("Discarded stale offer round", extra={"generation": generation})
            return False
        except Exception as e:
            logger.error(
                "Failed to send offer",
                extra={"remote_id": remote_id, "error": str(e)},
                exc_info=True,
            )
            if state is self._state:
                if initial:
                    state.has_initiated_call = False
                if state.phase is CallPhase.OFFERING:
                    self._transition(state, fallback)
            return False
        finally:
            state.is_processing_call = False

    async def _abandon_local_offer(self, state: NegotiationState, peer: PeerConnection) -> None:
        state.signaling_state = SignalingState.STABLE
        state.pending_offer = None
        try:
            await peer.rollback()
        except Exception as e:
            logger.warning("Rollback of unsent offer failed", extra={"error": str(e)})

    async def _resend_pending_offer(self, state: NegotiationState) -> None:
        if state.pending_offer is None or state.remote_id is None:
            return
        try:
            await self._channel.send(
                CallOfferMessage(
                    to=state.remote_id,
                    sdp_offer=state.pending_offer.to_payload(),
                    display_name=self.display_name,
                )
            )
        except ConnectionError as e:
            logger.warning("Could not re-send pending offer", extra={"error": str(e)})

    async def handle_answer(
        self, sender: str, payload: JSONPayload, display_name: str = ""
    ) -> bool:
        """Apply the peer's answer to our outstanding offer.

        Returns:
            True if the answer was applied
        """
        state = self._state

        try:
            answer = SessionDescription.from_payload(payload)
        except ValidationError as e:
            logger.warning("Malformed answer dropped", extra={"sender": sender, "error": str(e)})
            return False

        if answer.type != "answer":
            logger.warning("Non-answer description dropped", extra={"type": answer.type})
            return False

        if state.signaling_state is SignalingState.STABLE or state.applying_answer:
            logger.debug("Duplicate answer ignored", extra={"sender": sender})
            return False

        if state.signaling_state is not SignalingState.HAVE_LOCAL_OFFER:
            logger.warning(
                "Cannot accept answer in state",
                extra={"signaling_state": state.signaling_state.value},
            )
            return False

        if sender != state.remote_id:
            logger.warning(
                "Answer from unexpected participant dropped",
                extra={"sender": sender, "remote_id": state.remote_id},
            )
            return False

        peer = self._peer
        if peer is None:
            logger.warning("Answer without transport dropped")
            return False

        generation = state.generation
        state.applying_answer = True
        try:
            await peer.set_remote_description(answer)
            self._check(generation)

            state.signaling_state = SignalingState.STABLE
            state.pending_offer = None
            state.remote_description_set = True
            if display_name:
                state.remote_display_name = display_name
            self._transition(state, CallPhase.ESTABLISHED)

            logger.info("Answer applied", extra={"remote_id": sender})
            await self._flush_candidates(state)
            return True

        except _StaleNegotiation:
            logger.debug("Discarded stale answer", extra={"generation": generation})
            return False
        except Exception as e:
            logger.error(
                "Failed to apply answer",
                extra={"remote_id": sender, "error": str(e)},
                exc_info=True,
            )
            return False
        finally:
            state.applying_answer = False
            self._run_deferred_renegotiation(state)

    # === Answer side ===

    async def handle_incoming_offer(
        self, sender: str, payload: JSONPayload, display_name: str = ""
    ) -> bool:
        """Answer the peer's offer.

        Returns:
            True if an answer was sent
        """
        state = self._state

        try:
            offer = SessionDescription.from_payload(payload)
        except ValidationError as e:
            logger.warning("Malformed offer dropped", extra={"sender": sender, "error": str(e)})
            return False

        if offer.type != "offer":
            logger.warning("Non-offer description dropped", extra={"type": offer.type})
            return False

        if state.remote_id is not None and sender != state.remote_id:
            logger.warning(
                "Offer from unexpected participant dropped",
                extra={"sender": sender, "remote_id": state.remote_id},
            )
            return False

        if state.is_processing_call or state.applying_answer:
            logger.warning("Already processing a call, dropping incoming offer")
            return False

        if (
            state.signaling_state is SignalingState.STABLE
            and state.remote_description_set
            and offer.sdp == state.last_remote_offer_sdp
        ):
            logger.debug("Duplicate offer ignored", extra={"sender": sender})
            return False

        glare = state.signaling_state is SignalingState.HAVE_LOCAL_OFFER
        if glare and self.local_id is not None and is_offerer(self.local_id, sender):
            logger.info("Offer collision, keeping local offer", extra={"remote_id": sender})
            await self._resend_pending_offer(state)
            return False

        generation = state.generation
        if state.phase is CallPhase.ESTABLISHED:
            fallback = CallPhase.ESTABLISHED
        else:
            fallback = CallPhase.ARBITRATING

        # Claimed before the first await so copies of this offer are dropped
        state.is_processing_call = True
        self._cancel_auto_call()
        state.remote_id = sender
        if display_name:
            state.remote_display_name = display_name

        try:
            if glare:
                logger.info("Offer collision, rolling back local offer", extra={"remote_id": sender})
                if self._peer is not None:
                    await self._abandon_local_offer(state, self._peer)
                    self._check(generation)
                else:
                    state.signaling_state = SignalingState.STABLE
                    state.pending_offer = None

            self._transition(state, CallPhase.ANSWERING)
            peer = await self._attach_local_media(generation)

            await peer.set_remote_description(offer)
            self._check(generation)
            state.last_remote_offer_sdp = offer.sdp

            answer = await peer.create_answer()
            self._check(generation)
            await peer.set_local_description(answer)
            self._check(generation)

            local = peer.local_description or answer
            await self._channel.send(
                CallAnswerMessage(
                    to=sender,
                    sdp_answer=local.to_payload(),
                    display_name=self.display_name,
                )
            )
            self._check(generation)

            state.signaling_state = SignalingState.STABLE
            state.remote_description_set = True
            self._transition(state, CallPhase.ESTABLISHED)

            logger.info("Answer sent", extra={"remote_id": sender})
            await self._flush_candidates(state)
            return True

        except _StaleNegotiation:
            logger.debug("Discarded stale answer round", extra={"generation": generation})
            return False
        except Exception as e:
            logger.error(
                "Failed to answer incoming call",
                extra={"remote_id": sender, "error": str(e)},
                exc_info=True,
            )
            if state is self._state:
                if fallback is not CallPhase.ESTABLISHED:
                    state.remote_description_set = False
                if state.phase is CallPhase.ANSWERING:
                    self._transition(state, fallback)
            return False
        finally:
            state.is_processing_call = False
            self._run_deferred_renegotiation(state)

    # === Candidates ===

    async def handle_remote_ice_candidate(self, payload: JSONPayload) -> None:
        """Apply or queue a remote candidate.

        Malformed candidates are logged and dropped.
        """
        try:
            candidate = IceCandidate.from_payload(payload)
        except ValidationError as e:
            logger.warning("Malformed ICE candidate dropped", extra={"error": str(e)})
            return

        state = self._state
        state.ice_candidate_queue.append(candidate)

        if state.remote_description_set:
            await self._flush_candidates(state)
        else:
            logger.debug(
                "ICE candidate queued",
                extra={"queued": len(state.ice_candidate_queue)},
            )

    async def _flush_candidates(self, state: NegotiationState) -> None:
        """Apply queued candidates in arrival order.

        Only one flush drains a queue at a time; candidates arriving during a
        flush are appended and picked up by the running one.
        """
        if state.flushing_candidates:
            return

        state.flushing_candidates = True
        try:
            while state.ice_candidate_queue and state is self._state:
                peer = self._peer
                if peer is None:
                    return
                candidate = state.ice_candidate_queue.popleft()
                try:
                    await peer.add_ice_candidate(candidate)
                except Exception as e:
                    logger.warning("Error adding remote ICE candidate", extra={"error": str(e)})
        finally:
            state.flushing_candidates = False

    async def _send_local_candidate(self, peer: PeerConnection, candidate: IceCandidate) -> None:
        state = self._state
        if peer is not self._peer or state.remote_id is None:
            return
        try:
            await self._channel.send(
                IceCandidateMessage(to=state.remote_id, candidate=candidate.to_payload())
            )
        except ConnectionError as e:
            logger.warning("Could not send ICE candidate", extra={"error": str(e)})

    # === Teardown ===

    async def reset(self) -> None:
        """Tear down the transport and start over from a fresh idle state.

        Safe to call from any state, including mid-negotiation: in-flight
        rounds see the new generation and discard their results. Local media
        is kept; use ``release_local_media()`` to stop it.
        """
        old = self._state
        if old.phase is not CallPhase.CLOSED:
            self._transition(old, CallPhase.CLOSED)
        old.signaling_state = SignalingState.CLOSED
        old.ice_candidate_queue.clear()
        self._cancel_auto_call()

        self._state = NegotiationState(generation=old.generation + 1)

        async with self._peer_lock:
            peer, self._peer = self._peer, None
            if peer is not None:
                try:
                    await peer.remove_all_tracks()
                    await peer.close()
                except Exception as e:
                    logger.warning("Error while closing peer transport", extra={"error": str(e)})

        logger.info("Negotiation reset", extra={"generation": self._state.generation})
        self.emit("ready")

    def release_local_media(self) -> None:
        """Stop and forget local media."""
        self._media_epoch += 1
        stream, self._local_stream = self._local_stream, None
        if stream is not None:
            stream.stop()

    # === Internals ===

    def _check(self, generation: int) -> None:
        if generation != self._state.generation:
            raise _StaleNegotiation()

    def _transition(self, state: NegotiationState, new_phase: CallPhase) -> None:
        """Move a state to a new phase.

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_phase is state.phase:
            return

        if new_phase not in VALID_TRANSITIONS[state.phase]:
            raise ValueError(f"Invalid phase transition: {state.phase.value} -> {new_phase.value}")

        old_phase = state.phase
        state.phase = new_phase

        logger.debug(
            "Call phase transition",
            extra={
                "from_phase": old_phase.value,
                "to_phase": new_phase.value,
                "generation": state.generation,
            },
        )

        if state is self._state:
            self.emit("phase", new_phase)

    async def _ensure_local_media(self, generation: int) -> LocalMediaStream:
        async with self._media_lock:
            if self._local_stream is None:
                epoch = self._media_epoch
                stream = await acquire_local_media(self._media_provider, self.constraints)
                if epoch != self._media_epoch:
                    # Released while acquiring
                    stream.stop()
                    raise _StaleNegotiation()
                self._local_stream = stream
            stream = self._local_stream

        self._check(generation)
        return stream

    async def _ensure_peer(self, generation: int) -> PeerConnection:
        async with self._peer_lock:
            self._check(generation)
            if self._peer is None:
                servers = await self._ice_provider.get_ice_servers()
                self._check(generation)
                peer = self._peer_factory(servers)
                self._wire_peer(peer)
                self._peer = peer
                logger.debug("Peer transport created", extra={"ice_servers": len(servers)})
            return self._peer

    async def _attach_local_media(self, generation: int) -> PeerConnection:
        stream = await self._ensure_local_media(generation)
        peer = await self._ensure_peer(generation)
        for track in stream.get_tracks():
            await peer.add_track(track)
        self._check(generation)
        return peer

    def _wire_peer(self, peer: PeerConnection) -> None:
        async def on_ice_candidate(candidate: IceCandidate) -> None:
            await self._send_local_candidate(peer, candidate)

        async def on_track(track: object) -> None:
            if peer is self._peer:
                self.emit("track", track)

        async def on_connection_state_change(connection_state: str) -> None:
            if peer is self._peer:
                logger.info("Peer connection state", extra={"state": connection_state})
                self.emit("connection_state", connection_state)

        peer.on_ice_candidate(on_ice_candidate)
        peer.on_track(on_track)
        peer.on_connection_state_change(on_connection_state_change)

    def _run_deferred_renegotiation(self, state: NegotiationState) -> None:
        if (
            state is not self._state
            or not state.renegotiation_pending
            or state.is_processing_call
            or state.applying_answer
            or state.signaling_state is not SignalingState.STABLE
            or state.phase is not CallPhase.ESTABLISHED
        ):
            return

        task = asyncio.create_task(self._run_offer_round(state, initial=False))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_listener_error(self, error: Exception) -> None:
        logger.error("Negotiation listener failed", extra={"error": str(error)}, exc_info=error)
