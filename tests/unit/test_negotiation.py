"""Unit tests for the peer negotiation coordinator.

Tests role arbitration, offer/answer handling, candidate buffering, glare
resolution, renegotiation and reset with a fake peer transport.
"""

import asyncio
import itertools

import pytest

from src.client.media import LocalTrack, MediaConstraints, TrackKind
from src.client.negotiation import (
    VALID_TRANSITIONS,
    CallPhase,
    NegotiationCoordinator,
    SignalingState,
    is_offerer,
)
from src.client.peer import IceCandidate
from src.common.errors import ProtocolStateError
from tests.helpers.signaling_fakes import (
    FakeMediaProvider,
    FakeMediaTrack,
    PeerFactory,
    RecordingChannel,
    make_coordinator,
    settle,
)

OFFER = {"type": "offer", "sdp": "v=0 remote-offer"}
ANSWER = {"type": "answer", "sdp": "v=0 remote-answer"}


def candidate(n: int) -> dict:
    return {
        "candidate": f"candidate:{n} 1 udp 2122260223 192.168.1.{n} 5000{n} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def offerer_with_outstanding_offer(
    channel: RecordingChannel,
) -> tuple[NegotiationCoordinator, PeerFactory, FakeMediaProvider]:
    coordinator, factory, media = make_coordinator(channel, local_id="aaa")
    coordinator.set_peer("zzz", "Zed")
    await settle()
    assert coordinator.signaling_state is SignalingState.HAVE_LOCAL_OFFER
    return coordinator, factory, media


# ============================================================================
# Role arbitration
# ============================================================================


class TestRoleArbitration:
    """Test offerer selection."""

    def test_smaller_id_offers(self) -> None:
        """Test the smaller id is the offerer."""
        assert is_offerer("aaa", "zzz") is True
        assert is_offerer("zzz", "aaa") is False

    def test_exactly_one_offerer_per_pair(self) -> None:
        """Test arbitration is symmetric for every pair of distinct ids."""
        ids = ["p-0a1b", "p-0A1b", "p-ff", "p-10", "p-9", "a", "ab", "b"]
        for a, b in itertools.permutations(ids, 2):
            assert is_offerer(a, b) != is_offerer(b, a)

    def test_equal_ids_rejected(self) -> None:
        """Test equal ids cannot be arbitrated."""
        with pytest.raises(ValueError, match="must differ"):
            is_offerer("same", "same")

    def test_set_peer_requires_local_id(self) -> None:
        """Test set_peer before the session id is known."""
        coordinator, _, _ = make_coordinator(RecordingChannel())
        with pytest.raises(ProtocolStateError):
            coordinator.set_peer("zzz")

    @pytest.mark.asyncio
    async def test_offerer_calls_after_debounce(self) -> None:
        """Test the offerer sends one offer once the debounce elapses."""
        channel = RecordingChannel()
        coordinator, factory, media = make_coordinator(channel, local_id="aaa", debounce_s=0.05)

        coordinator.set_peer("zzz", "Zed")
        assert coordinator.phase is CallPhase.ARBITRATING
        await settle()
        assert channel.of_type("call:offer") == []

        await asyncio.sleep(0.1)
        await settle()

        offers = channel.of_type("call:offer")
        assert len(offers) == 1
        assert offers[0].to == "zzz"
        assert offers[0].sdp_offer["type"] == "offer"
        assert coordinator.phase is CallPhase.OFFERING
        assert coordinator.state.has_initiated_call is True
        assert coordinator.state.is_processing_call is False
        assert media.acquire_count == 1
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_answerer_waits(self) -> None:
        """Test the larger id never auto-calls."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")

        coordinator.set_peer("aaa")
        await settle()

        assert channel.sent == []
        assert coordinator.phase is CallPhase.ARBITRATING

    @pytest.mark.asyncio
    async def test_clear_peer_cancels_auto_call(self) -> None:
        """Test forgetting the peer during the debounce cancels the call."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="aaa", debounce_s=0.05)

        coordinator.set_peer("zzz")
        coordinator.clear_peer()
        await asyncio.sleep(0.1)
        await settle()

        assert channel.sent == []
        assert coordinator.phase is CallPhase.IDLE
        assert coordinator.remote_id is None

    @pytest.mark.asyncio
    async def test_set_peer_twice_schedules_one_call(self) -> None:
        """Test learning the same peer twice (room:joined and user:joined)."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="aaa")

        coordinator.set_peer("zzz")
        coordinator.set_peer("zzz")
        await settle()

        assert len(channel.of_type("call:offer")) == 1


# ============================================================================
# Phase transitions
# ============================================================================


class TestPhaseTransitions:
    """Test the call phase state machine."""

    def test_closed_is_terminal(self) -> None:
        """Test nothing leaves CLOSED."""
        assert VALID_TRANSITIONS[CallPhase.CLOSED] == set()

    def test_every_phase_can_close(self) -> None:
        """Test teardown is allowed from any live phase."""
        for phase, targets in VALID_TRANSITIONS.items():
            if phase is not CallPhase.CLOSED:
                assert CallPhase.CLOSED in targets

    def test_invalid_transition_raises(self) -> None:
        """Test skipping the handshake is rejected."""
        coordinator, _, _ = make_coordinator(RecordingChannel(), local_id="aaa")
        with pytest.raises(ValueError, match="Invalid phase transition"):
            coordinator._transition(coordinator.state, CallPhase.ESTABLISHED)

    @pytest.mark.asyncio
    async def test_phase_events_emitted(self) -> None:
        """Test listeners see each phase change."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="aaa")
        phases: list[CallPhase] = []
        coordinator.on("phase", phases.append)

        coordinator.set_peer("zzz")
        await settle()
        await coordinator.handle_answer("zzz", ANSWER)

        assert phases == [CallPhase.ARBITRATING, CallPhase.OFFERING, CallPhase.ESTABLISHED]


# ============================================================================
# Offer side
# ============================================================================


class TestInitiateCall:
    """Test sending offers."""

    @pytest.mark.asyncio
    async def test_initiate_without_peer(self) -> None:
        """Test calling nobody sends nothing."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="aaa")

        assert await coordinator.initiate_call() is False
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_initiate_is_guarded(self) -> None:
        """Test a second initiate while the first is pending is refused."""
        channel = RecordingChannel()
        coordinator, _, media = make_coordinator(channel, local_id="aaa", debounce_s=10)
        media.gate = asyncio.Event()
        coordinator.set_peer("zzz")

        first = asyncio.create_task(coordinator.initiate_call())
        await settle()
        assert coordinator.state.is_processing_call is True

        assert await coordinator.initiate_call() is False

        media.gate.set()
        assert await first is True
        assert await coordinator.initiate_call() is False
        assert len(channel.of_type("call:offer")) == 1
        await coordinator.reset()

    @pytest.mark.asyncio
    async def test_media_failure_rolls_back_flags(self) -> None:
        """Test a failed media acquisition allows a later attempt."""
        channel = RecordingChannel()
        coordinator, _, media = make_coordinator(channel, local_id="aaa")
        media.fail = True

        coordinator.set_peer("zzz")
        await settle()

        state = coordinator.state
        assert channel.sent == []
        assert state.has_initiated_call is False
        assert state.is_processing_call is False
        assert coordinator.phase is CallPhase.ARBITRATING

        media.fail = False
        assert await coordinator.initiate_call() is True
        assert len(channel.of_type("call:offer")) == 1

    @pytest.mark.asyncio
    async def test_send_failure_abandons_offer(self) -> None:
        """Test a relay failure rolls the local offer back."""
        channel = RecordingChannel()
        channel.fail = True
        coordinator, factory, _ = make_coordinator(channel, local_id="aaa", debounce_s=10)
        coordinator.set_peer("zzz")

        assert await coordinator.initiate_call() is False

        assert coordinator.state.has_initiated_call is False
        assert coordinator.state.is_processing_call is False
        assert coordinator.signaling_state is SignalingState.STABLE
        assert factory.last.signaling_state == "stable"
        assert factory.last.rollback_count == 1
        await coordinator.reset()

    @pytest.mark.asyncio
    async def test_sends_applied_local_description(self) -> None:
        """Test the offer sent is the transport's applied local description."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)

        sent = channel.of_type("call:offer")[0]
        assert factory.last.local_description is not None
        assert sent.sdp_offer == factory.last.local_description.to_payload()
        assert "audio" in sent.sdp_offer["sdp"]
        assert "video" in sent.sdp_offer["sdp"]

    @pytest.mark.asyncio
    async def test_both_kinds_disabled_still_sends_audio(self) -> None:
        """Test an audio track is negotiated (disabled) when everything is off."""
        channel = RecordingChannel()
        coordinator, _, media = make_coordinator(channel, local_id="aaa")
        coordinator.constraints = MediaConstraints(audio=False, video=False)

        coordinator.set_peer("zzz")
        await settle()

        assert media.requests == [MediaConstraints(audio=True, video=False)]
        stream = coordinator.local_stream
        assert stream is not None
        assert [t.kind for t in stream.get_tracks()] == [TrackKind.AUDIO]
        assert stream.audio_tracks[0].enabled is False
        assert len(channel.of_type("call:offer")) == 1


class TestHandleAnswer:
    """Test applying answers."""

    @pytest.mark.asyncio
    async def test_answer_establishes_call(self) -> None:
        """Test a valid answer completes the handshake."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)

        assert await coordinator.handle_answer("zzz", ANSWER, "Zed") is True

        assert coordinator.signaling_state is SignalingState.STABLE
        assert coordinator.phase is CallPhase.ESTABLISHED
        assert coordinator.state.remote_description_set is True
        assert coordinator.state.remote_display_name == "Zed"
        assert factory.last.signaling_state == "stable"

    @pytest.mark.asyncio
    async def test_answer_in_stable_ignored(self) -> None:
        """Test an answer without an outstanding offer is ignored."""
        coordinator, factory, _ = make_coordinator(RecordingChannel(), local_id="aaa")

        assert await coordinator.handle_answer("zzz", ANSWER) is False
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_duplicate_answer_ignored(self) -> None:
        """Test a re-delivered answer does not touch the transport."""
        channel = RecordingChannel()
        coordinator, _, _ = await offerer_with_outstanding_offer(channel)

        assert await coordinator.handle_answer("zzz", ANSWER) is True
        assert await coordinator.handle_answer("zzz", ANSWER) is False
        assert coordinator.phase is CallPhase.ESTABLISHED

    @pytest.mark.asyncio
    async def test_answer_from_stranger_dropped(self) -> None:
        """Test an answer from someone other than the peer is dropped."""
        channel = RecordingChannel()
        coordinator, _, _ = await offerer_with_outstanding_offer(channel)

        assert await coordinator.handle_answer("mmm", ANSWER) is False
        assert coordinator.signaling_state is SignalingState.HAVE_LOCAL_OFFER

    @pytest.mark.asyncio
    async def test_malformed_answer_dropped(self) -> None:
        """Test a payload that is not a description is dropped."""
        channel = RecordingChannel()
        coordinator, _, _ = await offerer_with_outstanding_offer(channel)

        assert await coordinator.handle_answer("zzz", {"sdp": 42}) is False
        assert await coordinator.handle_answer("zzz", OFFER) is False
        assert coordinator.signaling_state is SignalingState.HAVE_LOCAL_OFFER


# ============================================================================
# Answer side
# ============================================================================


class TestHandleIncomingOffer:
    """Test answering offers."""

    @pytest.mark.asyncio
    async def test_offer_answered(self) -> None:
        """Test an incoming offer is answered and the call established."""
        channel = RecordingChannel()
        coordinator, factory, media = make_coordinator(channel, local_id="zzz")
        coordinator.set_peer("aaa")

        assert await coordinator.handle_incoming_offer("aaa", OFFER, "Ann") is True

        answers = channel.of_type("call:answer")
        assert len(answers) == 1
        assert answers[0].to == "aaa"
        assert answers[0].sdp_answer["type"] == "answer"
        assert coordinator.phase is CallPhase.ESTABLISHED
        assert coordinator.signaling_state is SignalingState.STABLE
        assert coordinator.state.remote_description_set is True
        assert coordinator.state.remote_display_name == "Ann"
        assert media.acquire_count == 1
        assert {t.kind for t in factory.last.local_tracks} == {TrackKind.AUDIO, TrackKind.VIDEO}

    @pytest.mark.asyncio
    async def test_offer_before_peer_known(self) -> None:
        """Test an offer can arrive before user:joined."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")

        assert await coordinator.handle_incoming_offer("aaa", OFFER) is True
        assert coordinator.remote_id == "aaa"
        assert coordinator.phase is CallPhase.ESTABLISHED

    @pytest.mark.asyncio
    async def test_offer_while_busy_dropped(self) -> None:
        """Test a competing offer during a round is dropped."""
        channel = RecordingChannel()
        coordinator, _, media = make_coordinator(channel, local_id="zzz")
        media.gate = asyncio.Event()

        first = asyncio.create_task(coordinator.handle_incoming_offer("aaa", OFFER))
        await settle()

        assert await coordinator.handle_incoming_offer("aaa", OFFER) is False

        media.gate.set()
        assert await first is True
        assert len(channel.of_type("call:answer")) == 1
        assert coordinator.state.is_processing_call is False

    @pytest.mark.asyncio
    async def test_offer_from_stranger_dropped(self) -> None:
        """Test an offer from a participant other than the peer is dropped."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")
        coordinator.set_peer("aaa")

        assert await coordinator.handle_incoming_offer("mmm", OFFER) is False
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_duplicate_offer_ignored(self) -> None:
        """Test a re-delivered offer is not answered twice."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")

        assert await coordinator.handle_incoming_offer("aaa", OFFER) is True
        assert await coordinator.handle_incoming_offer("aaa", OFFER) is False
        assert len(channel.of_type("call:answer")) == 1

    @pytest.mark.asyncio
    async def test_answer_failure_clears_processing(self) -> None:
        """Test a failed answer never leaves the coordinator busy."""
        channel = RecordingChannel()
        channel.fail = True
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")
        coordinator.set_peer("aaa")

        assert await coordinator.handle_incoming_offer("aaa", OFFER) is False

        assert coordinator.state.is_processing_call is False
        assert coordinator.state.remote_description_set is False
        assert coordinator.phase is CallPhase.ARBITRATING


# ============================================================================
# Candidates
# ============================================================================


class TestCandidateBuffering:
    """Test remote candidate queueing and flushing."""

    @pytest.mark.asyncio
    async def test_candidates_before_offer_flushed_in_order(self) -> None:
        """Test candidates that outrace the offer are applied after it, in order."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="zzz")

        for n in (1, 2, 3):
            await coordinator.handle_remote_ice_candidate(candidate(n))

        assert len(coordinator.state.ice_candidate_queue) == 3
        assert factory.created == []

        await coordinator.handle_incoming_offer("aaa", OFFER)

        applied = [c.candidate for c in factory.last.applied_candidates]
        assert applied == [candidate(n)["candidate"] for n in (1, 2, 3)]
        assert len(coordinator.state.ice_candidate_queue) == 0

    @pytest.mark.asyncio
    async def test_candidates_during_answer_round_queued(self) -> None:
        """Test candidates arriving while the answer is built wait for it."""
        channel = RecordingChannel()
        coordinator, factory, media = make_coordinator(channel, local_id="zzz")
        media.gate = asyncio.Event()

        round_task = asyncio.create_task(coordinator.handle_incoming_offer("aaa", OFFER))
        await settle()
        await coordinator.handle_remote_ice_candidate(candidate(1))
        await coordinator.handle_remote_ice_candidate(candidate(2))
        assert len(coordinator.state.ice_candidate_queue) == 2

        media.gate.set()
        await round_task
        await coordinator.handle_remote_ice_candidate(candidate(3))

        applied = [c.candidate for c in factory.last.applied_candidates]
        assert applied == [candidate(n)["candidate"] for n in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_candidates_before_answer_flushed(self) -> None:
        """Test the offerer queues candidates until the answer is applied."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)

        await coordinator.handle_remote_ice_candidate(candidate(7))
        assert factory.last.applied_candidates == []

        await coordinator.handle_answer("zzz", ANSWER)
        assert [c.candidate for c in factory.last.applied_candidates] == [candidate(7)["candidate"]]

    @pytest.mark.asyncio
    async def test_malformed_candidate_dropped(self) -> None:
        """Test a malformed candidate is logged and dropped."""
        coordinator, _, _ = make_coordinator(RecordingChannel(), local_id="zzz")

        await coordinator.handle_remote_ice_candidate({"sdpMid": "0"})

        assert len(coordinator.state.ice_candidate_queue) == 0

    @pytest.mark.asyncio
    async def test_candidate_error_does_not_stop_flush(self) -> None:
        """Test one rejected candidate does not block the rest."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="zzz")
        for n in (1, 2):
            await coordinator.handle_remote_ice_candidate(candidate(n))

        await coordinator.handle_incoming_offer("aaa", OFFER)
        # Transport built during the round; make the next candidate fail
        factory.last.candidate_error = ValueError("bad candidate")
        await coordinator.handle_remote_ice_candidate(candidate(3))
        await coordinator.handle_remote_ice_candidate(candidate(4))

        applied = [c.candidate for c in factory.last.applied_candidates]
        assert applied == [candidate(n)["candidate"] for n in (1, 2, 4)]

    @pytest.mark.asyncio
    async def test_local_candidates_sent_to_peer(self) -> None:
        """Test locally gathered candidates are addressed to the peer."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)

        await factory.last.emit_local_candidate(
            IceCandidate(candidate="candidate:1 1 udp 1 10.0.0.1 9 typ host", sdp_mid="0")
        )

        sent = channel.of_type("ice:candidate")
        assert len(sent) == 1
        assert sent[0].to == "zzz"
        assert sent[0].candidate["sdpMid"] == "0"


# ============================================================================
# Glare
# ============================================================================


class TestGlare:
    """Test crossing offers."""

    @pytest.mark.asyncio
    async def test_smaller_id_keeps_offer(self) -> None:
        """Test the arbitrated offerer ignores the crossing offer and re-sends its own."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)

        assert await coordinator.handle_incoming_offer("zzz", OFFER) is False

        offers = channel.of_type("call:offer")
        assert len(offers) == 2
        assert offers[0].sdp_offer == offers[1].sdp_offer
        assert channel.of_type("call:answer") == []
        assert coordinator.signaling_state is SignalingState.HAVE_LOCAL_OFFER
        assert factory.last.rollback_count == 0

    @pytest.mark.asyncio
    async def test_larger_id_rolls_back_and_answers(self) -> None:
        """Test the other side abandons its offer and answers."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="zzz")
        coordinator.set_peer("aaa")
        assert await coordinator.initiate_call() is True

        assert await coordinator.handle_incoming_offer("aaa", OFFER) is True

        assert factory.last.rollback_count == 1
        assert len(channel.of_type("call:answer")) == 1
        assert coordinator.signaling_state is SignalingState.STABLE
        assert coordinator.phase is CallPhase.ESTABLISHED
        assert coordinator.state.pending_offer is None

    @pytest.mark.asyncio
    async def test_resent_offer_during_rollback_answered_once(self) -> None:
        """Test a second copy of the winning offer arriving mid-rollback is dropped."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="zzz")
        coordinator.set_peer("aaa")
        assert await coordinator.initiate_call() is True
        factory.last.suspend_teardown = True

        results = await asyncio.gather(
            coordinator.handle_incoming_offer("aaa", OFFER),
            coordinator.handle_incoming_offer("aaa", OFFER),
        )

        assert sorted(results) == [False, True]
        assert len(channel.of_type("call:answer")) == 1
        assert factory.last.rollback_count == 1
        assert coordinator.phase is CallPhase.ESTABLISHED
        assert coordinator.state.is_processing_call is False


# ============================================================================
# Renegotiation
# ============================================================================


class TestRenegotiation:
    """Test adding tracks mid-call."""

    @pytest.mark.asyncio
    async def test_renegotiate_established_call(self) -> None:
        """Test a new track triggers a fresh offer."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="aaa")
        coordinator.constraints = MediaConstraints(audio=True, video=False)
        coordinator.set_peer("zzz")
        await settle()
        await coordinator.handle_answer("zzz", ANSWER)

        video = LocalTrack(TrackKind.VIDEO, FakeMediaTrack("video"))
        assert await coordinator.renegotiate(video) is True

        offers = channel.of_type("call:offer")
        assert len(offers) == 2
        assert "video" not in offers[0].sdp_offer["sdp"]
        assert "video" in offers[1].sdp_offer["sdp"]
        assert coordinator.phase is CallPhase.OFFERING
        assert len(factory.created) == 1
        assert coordinator.local_stream is not None
        assert video in coordinator.local_stream.get_tracks()

    @pytest.mark.asyncio
    async def test_renegotiate_by_answerer(self) -> None:
        """Test the original answerer can renegotiate too."""
        channel = RecordingChannel()
        coordinator, _, _ = make_coordinator(channel, local_id="zzz")
        await coordinator.handle_incoming_offer("aaa", OFFER)

        video = LocalTrack(TrackKind.VIDEO, FakeMediaTrack("video"))
        assert await coordinator.renegotiate(video) is True
        assert channel.of_type("call:offer")[0].to == "aaa"

    @pytest.mark.asyncio
    async def test_renegotiate_deferred_while_offer_outstanding(self) -> None:
        """Test renegotiation waits for the in-flight round, then runs."""
        channel = RecordingChannel()
        coordinator, _, _ = await offerer_with_outstanding_offer(channel)

        video = LocalTrack(TrackKind.VIDEO, FakeMediaTrack("video"))
        assert await coordinator.renegotiate(video) is False
        assert coordinator.state.renegotiation_pending is True
        assert len(channel.of_type("call:offer")) == 1

        await coordinator.handle_answer("zzz", ANSWER)
        await settle()

        assert len(channel.of_type("call:offer")) == 2
        assert coordinator.state.renegotiation_pending is False

    @pytest.mark.asyncio
    async def test_renegotiate_without_peer(self) -> None:
        """Test renegotiating after the peer was cleared sends nothing."""
        channel = RecordingChannel()
        coordinator, _, _ = await offerer_with_outstanding_offer(channel)
        await coordinator.handle_answer("zzz", ANSWER)
        coordinator.clear_peer()

        video = LocalTrack(TrackKind.VIDEO, FakeMediaTrack("video"))
        assert await coordinator.renegotiate(video) is False

        assert len(channel.of_type("call:offer")) == 1
        assert coordinator.phase is CallPhase.ESTABLISHED
        assert coordinator.state.is_processing_call is False

    @pytest.mark.asyncio
    async def test_track_before_call_joins_next_offer(self) -> None:
        """Test a track added before the call is simply attached."""
        channel = RecordingChannel()
        coordinator, factory, _ = make_coordinator(channel, local_id="zzz")

        screen = LocalTrack(TrackKind.VIDEO, FakeMediaTrack("video"), label="screen")
        assert await coordinator.renegotiate(screen) is False
        assert channel.sent == []
        assert factory.last.local_tracks == [screen]


# ============================================================================
# Reset
# ============================================================================


class TestReset:
    """Test teardown and restart."""

    @pytest.mark.asyncio
    async def test_reset_decommissions_transport(self) -> None:
        """Test reset removes tracks, closes the transport and emits ready."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)
        await coordinator.handle_answer("zzz", ANSWER)
        old_state = coordinator.state
        ready: list[bool] = []
        coordinator.on("ready", lambda: ready.append(True))

        await coordinator.reset()

        peer = factory.last
        assert peer.tracks_removed is True
        assert peer.closed is True
        assert coordinator.peer is None
        assert coordinator.phase is CallPhase.IDLE
        assert coordinator.signaling_state is SignalingState.STABLE
        assert coordinator.state.generation == old_state.generation + 1
        assert coordinator.state.remote_description_set is False
        assert coordinator.remote_id is None
        assert old_state.phase is CallPhase.CLOSED
        assert ready == [True]

    @pytest.mark.asyncio
    async def test_reset_mid_negotiation_discards_round(self) -> None:
        """Test an in-flight offer round finishing after reset is discarded."""
        channel = RecordingChannel()
        coordinator, factory, media = make_coordinator(channel, local_id="aaa")
        media.gate = asyncio.Event()
        coordinator.set_peer("zzz")
        await settle()
        assert coordinator.phase is CallPhase.OFFERING

        await coordinator.reset()
        media.gate.set()
        await settle()

        assert channel.sent == []
        assert factory.created == []
        assert coordinator.phase is CallPhase.IDLE
        assert coordinator.state.is_processing_call is False

    @pytest.mark.asyncio
    async def test_reset_drops_queued_candidates(self) -> None:
        """Test candidates queued for the old call are never applied."""
        coordinator, _, _ = make_coordinator(RecordingChannel(), local_id="zzz")
        await coordinator.handle_remote_ice_candidate(candidate(1))

        await coordinator.reset()

        assert len(coordinator.state.ice_candidate_queue) == 0

    @pytest.mark.asyncio
    async def test_call_after_reset_reaches_stable(self) -> None:
        """Test a fresh offer and a fresh answer both succeed after reset."""
        channel = RecordingChannel()
        coordinator, factory, media = await offerer_with_outstanding_offer(channel)
        await coordinator.reset()

        coordinator.set_peer("zzz")
        await settle()
        assert await coordinator.handle_answer("zzz", ANSWER) is True
        assert coordinator.signaling_state is SignalingState.STABLE
        assert len(factory.created) == 2
        assert media.acquire_count == 1

        await coordinator.reset()
        assert await coordinator.handle_incoming_offer("mmm", OFFER) is True
        assert coordinator.signaling_state is SignalingState.STABLE
        assert len(factory.created) == 3

    @pytest.mark.asyncio
    async def test_reset_is_safe_twice(self) -> None:
        """Test reset on an idle coordinator."""
        coordinator, _, _ = make_coordinator(RecordingChannel(), local_id="aaa")

        await coordinator.reset()
        await coordinator.reset()

        assert coordinator.state.generation == 2
        assert coordinator.phase is CallPhase.IDLE

    @pytest.mark.asyncio
    async def test_release_local_media_stops_tracks(self) -> None:
        """Test releasing media stops every local track."""
        channel = RecordingChannel()
        coordinator, _, media = await offerer_with_outstanding_offer(channel)

        coordinator.release_local_media()

        assert coordinator.local_stream is None
        assert all(t.stopped for t in media.streams[0].get_tracks())

    @pytest.mark.asyncio
    async def test_connection_state_forwarded(self) -> None:
        """Test transport connection states reach listeners."""
        channel = RecordingChannel()
        coordinator, factory, _ = await offerer_with_outstanding_offer(channel)
        states: list[str] = []
        coordinator.on("connection_state", states.append)

        await factory.last.set_connection_state("connected")

        assert states == ["connected"]

