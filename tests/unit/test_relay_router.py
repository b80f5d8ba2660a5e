"""Unit tests for the relay router.

Tests envelope-to-frame mapping, addressing checks and chat broadcast.
"""

import pytest

from src.signaling.metrics import MetricsCollector
from src.signaling.registry import Participant, SessionRegistry
from src.signaling.router import RelayRouter, SignalingEnvelope, SignalingKind
from tests.helpers.signaling_fakes import FakeConnection

OFFER = {"type": "offer", "sdp": "v=0"}


@pytest.fixture
def metrics() -> MetricsCollector:
    """Create isolated metrics collector."""
    return MetricsCollector()


@pytest.fixture
def registry(metrics: MetricsCollector) -> SessionRegistry:
    """Create registry."""
    return SessionRegistry(metrics=metrics)


@pytest.fixture
def router(registry: SessionRegistry, metrics: MetricsCollector) -> RelayRouter:
    """Create router."""
    return RelayRouter(registry, metrics=metrics)


async def seat(registry: SessionRegistry, participant_id: str, room: str | None) -> Participant:
    participant = Participant(connection=FakeConnection(participant_id), display_name=participant_id)
    registry.register(participant)
    if room is not None:
        await registry.join(room, participant)
    return participant


class TestRoute:
    """Test unicast relay."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("kind", "frame_type"),
        [
            (SignalingKind.OFFER, "call:incoming"),
            (SignalingKind.ANSWER, "call:accepted"),
            (SignalingKind.ICE_CANDIDATE, "ice:candidate"),
            (SignalingKind.CALL_END, "call:ended"),
        ],
    )
    async def test_kind_mapping(
        self,
        registry: SessionRegistry,
        router: RelayRouter,
        kind: SignalingKind,
        frame_type: str,
    ) -> None:
        """Test each envelope kind becomes its relayed frame."""
        await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r1")
        p2.connection.sent.clear()

        delivered = await router.route(
            SignalingEnvelope(kind=kind, sender="p1", to="p2", payload=OFFER)
        )

        assert delivered is True
        assert len(p2.connection.sent) == 1
        frame = p2.connection.sent[0]
        assert frame.type == frame_type
        assert frame.sender == "p1"

    @pytest.mark.asyncio
    async def test_payload_relayed_opaquely(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test the payload and display name reach the target untouched."""
        await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r1")
        payload = {"type": "offer", "sdp": "anything", "extra": [1, 2]}

        await router.route(
            SignalingEnvelope(
                kind=SignalingKind.OFFER, sender="p1", to="p2", payload=payload, display_name="Ann"
            )
        )

        frame = p2.connection.of_type("call:incoming")[0]
        assert frame.sdp_offer == payload
        assert frame.display_name == "Ann"
        wire = frame.to_json()
        assert '"from":"p1"' in wire
        assert '"sdpOffer"' in wire

    @pytest.mark.asyncio
    async def test_target_in_other_room_dropped(
        self, registry: SessionRegistry, router: RelayRouter, metrics: MetricsCollector
    ) -> None:
        """Test envelopes do not cross rooms."""
        await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r2")

        delivered = await router.route(
            SignalingEnvelope(kind=SignalingKind.OFFER, sender="p1", to="p2", payload=OFFER)
        )

        assert delivered is False
        assert p2.connection.sent == []
        assert metrics.get_summary()["dropped_total"] == 1

    @pytest.mark.asyncio
    async def test_unknown_target_dropped(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test envelopes to unknown participants are dropped."""
        await seat(registry, "p1", "r1")

        assert (
            await router.route(SignalingEnvelope(kind=SignalingKind.CALL_END, sender="p1", to="ghost"))
            is False
        )

    @pytest.mark.asyncio
    async def test_sender_outside_room_dropped(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test a sender not seated anywhere cannot relay."""
        await seat(registry, "p1", None)
        p2 = await seat(registry, "p2", "r1")

        assert (
            await router.route(SignalingEnvelope(kind=SignalingKind.OFFER, sender="p1", to="p2"))
            is False
        )
        assert p2.connection.sent == []

    @pytest.mark.asyncio
    async def test_closed_target_dropped(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test a target whose socket closed is skipped."""
        await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r1")
        await p2.connection.close()

        assert (
            await router.route(SignalingEnvelope(kind=SignalingKind.OFFER, sender="p1", to="p2"))
            is False
        )

    @pytest.mark.asyncio
    async def test_order_preserved_per_pair(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test envelopes from one sender arrive in send order."""
        await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r1")

        for n in range(5):
            await router.route(
                SignalingEnvelope(
                    kind=SignalingKind.ICE_CANDIDATE,
                    sender="p1",
                    to="p2",
                    payload={"candidate": f"candidate:{n}"},
                )
            )

        frames = p2.connection.of_type("ice:candidate")
        assert [f.candidate["candidate"] for f in frames] == [f"candidate:{n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_relay_metrics(
        self, registry: SessionRegistry, router: RelayRouter, metrics: MetricsCollector
    ) -> None:
        """Test relayed envelopes are counted by kind."""
        await seat(registry, "p1", "r1")
        await seat(registry, "p2", "r1")

        await router.route(SignalingEnvelope(kind=SignalingKind.OFFER, sender="p1", to="p2"))
        await router.route(SignalingEnvelope(kind=SignalingKind.ANSWER, sender="p2", to="p1"))

        text = metrics.export_prometheus()
        assert 'signaling_relayed_total{kind="offer"} 1.0' in text
        assert 'signaling_relayed_total{kind="answer"} 1.0' in text


class TestBroadcastChat:
    """Test room chat delivery."""

    @pytest.mark.asyncio
    async def test_broadcast_includes_sender(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test every member, sender included, gets the message."""
        p1 = await seat(registry, "p1", "r1")
        p2 = await seat(registry, "p2", "r1")
        stored = registry.record_chat("r1", p1, "hello")

        delivered = await router.broadcast_chat("r1", stored)

        assert delivered == 2
        for participant in (p1, p2):
            frame = participant.connection.of_type("chat:message")[0]
            assert frame.id == stored.id
            assert frame.sender == "p1"
            assert frame.sender_id == "p1"
            assert frame.text == "hello"

    @pytest.mark.asyncio
    async def test_broadcast_to_other_room_isolated(
        self, registry: SessionRegistry, router: RelayRouter
    ) -> None:
        """Test chat stays inside its room."""
        p1 = await seat(registry, "p1", "r1")
        p3 = await seat(registry, "p3", "r2")
        stored = registry.record_chat("r1", p1, "hello")

        await router.broadcast_chat("r1", stored)

        assert p3.connection.of_type("chat:message") == []
