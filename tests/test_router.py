"""Scenario tests for routing through the registry and negotiation engine."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from relay.api.state import RelayState
from relay.config import RelayConfig
from relay.envelope import Envelope, EnvelopeType
from relay.errors import NegotiationConflict, SessionNotFound, StaleAnswer, UnknownPeer
from relay.negotiation import NegotiationState, PeerRole


class Outbox:
    def __init__(self) -> None:
        self.envelopes: List[Envelope] = []

    def enqueue(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)

    def signaling(self) -> List[Envelope]:
        return [env for env in self.envelopes if env.type is not EnvelopeType.JOIN]


def make_room(*peer_ids: str, session_id: str = "room1", **config):
    state = RelayState(RelayConfig(**config))
    boxes = {}
    for peer_id in peer_ids:
        boxes[peer_id] = state.outboxes[peer_id] = Outbox()

    async def join() -> None:
        for peer_id in peer_ids:
            await state.registry.register(session_id, peer_id)

    asyncio.run(join())
    return state, boxes


def offer(sender: str, target: str | None, offer_id: str) -> Envelope:
    return Envelope(
        type=EnvelopeType.OFFER,
        from_peer=sender,
        to_peer=target,
        payload={"type": "offer", "sdp": "v=0..."},
        id=offer_id,
    )


def answer(sender: str, target: str | None, ref: str | None = None) -> Envelope:
    return Envelope(
        type=EnvelopeType.ANSWER,
        from_peer=sender,
        to_peer=target,
        payload={"type": "answer", "sdp": "v=0..."},
        ref=ref,
    )


def candidate(sender: str, target: str, label: str) -> Envelope:
    return Envelope(
        type=EnvelopeType.ICE_CANDIDATE,
        from_peer=sender,
        to_peer=target,
        payload={"candidate": label, "sdpMid": "0"},
    )


def test_full_negotiation_reaches_connected() -> None:
    state, boxes = make_room("a", "b")

    async def scenario() -> None:
        routed = await state.router.route(offer("a", "b", "o1"))
        assert routed.delivered_to == ("b",)
        await state.router.route(answer("b", "a", ref="o1"))
        await state.router.route(candidate("a", "b", "a-1"))
        await state.router.route(candidate("b", "a", "b-1"))
        await state.router.route(candidate("a", "b", "a-2"))
        await state.router.route(Envelope(type=EnvelopeType.CONNECTED, from_peer="a", to_peer="b"))
        await state.router.route(Envelope(type=EnvelopeType.CONNECTED, from_peer="b", to_peer="a"))

    asyncio.run(scenario())

    to_b = [(env.type.value, env.payload.get("candidate")) for env in boxes["b"].signaling()]
    to_a = [(env.type.value, env.payload.get("candidate")) for env in boxes["a"].signaling()]
    assert to_b == [("offer", None), ("ice-candidate", "a-1"), ("ice-candidate", "a-2")]
    assert to_a == [("answer", None), ("ice-candidate", "b-1")]

    record = state.negotiations.record_for("room1", "a", "b")
    assert record.state is NegotiationState.CONNECTED
    assert state.registry.peer("a").role is PeerRole.INITIATOR
    assert state.registry.peer("b").role is PeerRole.RESPONDER
    assert state.registry.peer("b").connection_state is NegotiationState.CONNECTED


@pytest.mark.parametrize("first", ["a", "b"])
def test_simultaneous_offers_resolve_to_smaller_peer(first: str) -> None:
    state, boxes = make_room("a", "b")
    offers = {"a": offer("a", "b", "offer-a"), "b": offer("b", "a", "offer-b")}
    second = "b" if first == "a" else "a"

    async def scenario() -> None:
        await asyncio.gather(
            state.router.route(offers[first]),
            state.router.route(offers[second]),
        )

    asyncio.run(scenario())

    received_by_b = boxes["b"].signaling()
    assert [env.id for env in received_by_b if env.type is EnvelopeType.OFFER] == ["offer-a"]
    assert all(env.from_peer != "b" for env in received_by_b)
    glare = [env for env in received_by_b if env.type is EnvelopeType.ERROR]
    assert len(glare) == 1
    assert glare[0].payload["code"] == "E_GLARE"
    assert glare[0].ref == "offer-b"

    record = state.negotiations.record_for("room1", "a", "b")
    assert record.offerer == "a"
    assert record.pending_offer_id == "offer-a"
    assert state.registry.peer("b").role is PeerRole.RESPONDER
    assert state.registry.peer("a").role is PeerRole.INITIATOR


@pytest.mark.parametrize("candidate_first", [True, False])
def test_candidate_never_overtakes_answer(candidate_first: bool) -> None:
    state, boxes = make_room("a", "b")

    async def scenario() -> None:
        await state.router.route(offer("a", "b", "o1"))
        pending = [state.router.route(answer("b", "a", ref="o1")), state.router.route(candidate("b", "a", "b-1"))]
        if candidate_first:
            pending.reverse()
        await asyncio.gather(*pending)

    asyncio.run(scenario())
    assert [env.type for env in boxes["a"].signaling()] == [
        EnvelopeType.ANSWER,
        EnvelopeType.ICE_CANDIDATE,
    ]


def test_unknown_target_is_rejected_without_forwarding() -> None:
    state, boxes = make_room("a", "b")
    before = {peer: list(box.envelopes) for peer, box in boxes.items()}

    with pytest.raises(UnknownPeer) as excinfo:
        asyncio.run(state.router.route(offer("a", "ghost", "o1")))

    assert excinfo.value.ref == "o1"
    assert {peer: box.envelopes for peer, box in boxes.items()} == before
    assert state.negotiations.records_in("room1") == []

    with pytest.raises(UnknownPeer):
        asyncio.run(state.router.route(offer("a", "a", "o2")))


def test_sender_without_session_is_rejected() -> None:
    state, _ = make_room("a", "b")

    async def scenario() -> None:
        await state.registry.unregister("a")
        await state.router.route(offer("a", "b", "o1"))

    with pytest.raises(SessionNotFound):
        asyncio.run(scenario())


def test_join_and_error_envelopes_bypass_negotiation() -> None:
    state, boxes = make_room("a", "b", "c", max_members=3)
    note = Envelope(type=EnvelopeType.JOIN, from_peer="a", payload={"name": "Alice"})

    result = asyncio.run(state.router.route(note))

    assert result.delivered_to == ("b", "c")
    assert boxes["b"].envelopes[-1] is note
    assert boxes["c"].envelopes[-1] is note
    assert state.negotiations.records_in("room1") == []


def test_broadcast_collects_per_target_failures() -> None:
    state, boxes = make_room("a", "b", "c", max_members=3)

    async def scenario():
        await state.router.route(offer("a", "b", "o-ab"))
        return await state.router.route(answer("b", None))

    result = asyncio.run(scenario())

    assert result.delivered_to == ("a",)
    assert set(result.failures) == {"c"}
    assert isinstance(result.failures["c"], StaleAnswer)
    assert [env.type for env in boxes["c"].signaling()] == []
    assert [record.peers for record in state.negotiations.records_in("room1")] == [("a", "b")]


def test_rejected_answer_leaves_no_record() -> None:
    state, boxes = make_room("a", "b")

    async def scenario() -> None:
        with pytest.raises(StaleAnswer):
            await state.router.route(answer("b", "a"))
        with pytest.raises(NegotiationConflict):
            await state.router.route(Envelope(type=EnvelopeType.CONNECTED, from_peer="a", to_peer="b"))

    asyncio.run(scenario())

    assert state.negotiations.records_in("room1") == []
    assert state.registry.snapshot("room1")["negotiations"] == []
    assert boxes["a"].signaling() == [] and boxes["b"].signaling() == []


def test_broadcast_pair_events_skip_peers_not_negotiating() -> None:
    state, boxes = make_room("a", "b", "c", max_members=3)

    async def scenario():
        await state.router.route(offer("a", "b", "o1"))
        await state.router.route(answer("b", "a", ref="o1"))
        reported = await state.router.route(Envelope(type=EnvelopeType.CONNECTED, from_peer="a"))
        trickled = await state.router.route(
            Envelope(type=EnvelopeType.ICE_CANDIDATE, from_peer="a", payload={"candidate": "a-1"})
        )
        return reported, trickled

    reported, trickled = asyncio.run(scenario())

    assert reported.failures == {}
    assert trickled.failures == {}
    assert trickled.delivered_to == ("b",)
    assert boxes["c"].signaling() == []
    assert [record.peers for record in state.negotiations.records_in("room1")] == [("a", "b")]
    assert state.negotiations.record_for("room1", "a", "b").connected_reports == {"a"}


def test_session_listing_departed_peer_is_rejected() -> None:
    state, boxes = make_room("a", "b")

    async def scenario() -> None:
        await state.router.route(offer("a", "b", "o1"))
        # b vanished from the peer index but the session still lists it.
        state.registry._peers.pop("b")
        await state.router.route(candidate("a", "b", "a-1"))

    with pytest.raises(SessionNotFound):
        asyncio.run(scenario())

    assert state.negotiations.records_in("room1") == []
    assert state.registry.members_of("room1") == frozenset({"a"})
    assert [env.type for env in boxes["b"].signaling()] == [EnvelopeType.OFFER]


def test_broadcast_offer_opens_one_record_per_pair() -> None:
    state, boxes = make_room("a", "b", "c", max_members=3)

    result = asyncio.run(state.router.route(offer("a", None, "o1")))

    assert result.delivered_to == ("b", "c")
    records = {record.peers: record.state for record in state.negotiations.records_in("room1")}
    assert records == {
        ("a", "b"): NegotiationState.OFFER_SENT,
        ("a", "c"): NegotiationState.OFFER_SENT,
    }
