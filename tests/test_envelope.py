"""Tests covering the envelope wire codec."""

from __future__ import annotations

import dataclasses
import json

import pytest

from relay.envelope import Envelope, EnvelopeType, decode, encode, make_error, make_glare_notice
from relay.errors import DecodeError, StaleAnswer


def test_round_trip_preserves_envelopes() -> None:
    samples = [
        Envelope(
            type=EnvelopeType.OFFER,
            from_peer="alice",
            to_peer="bob",
            payload={"type": "offer", "sdp": "v=0\r\no=- 1 2 IN IP4 127.0.0.1\r\n"},
        ),
        Envelope(
            type=EnvelopeType.ICE_CANDIDATE,
            from_peer="bob",
            payload={"candidate": "candidate:1 1 udp 2122260223 10.0.0.2 49152 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        ),
        make_error("alice", StaleAnswer("no pending offer", ref="abc")),
    ]

    for envelope in samples:
        assert decode(encode(envelope)) == envelope


def test_encode_emits_wire_shape() -> None:
    envelope = Envelope(type=EnvelopeType.JOIN, from_peer="alice", payload={"sessionId": "room1"})

    wire = json.loads(encode(envelope))

    assert set(wire) == {"type", "from", "to", "payload", "id", "ref"}
    assert wire["type"] == "join"
    assert wire["from"] == "alice"
    assert wire["to"] is None
    assert wire["id"] == envelope.id


def test_decode_fills_defaults() -> None:
    envelope = decode('{"type": "join", "to": null}')

    assert envelope.type is EnvelopeType.JOIN
    assert envelope.from_peer is None
    assert envelope.is_broadcast
    assert envelope.payload == {}
    assert envelope.id

    with_null_payload = decode(b'{"type": "leave", "payload": null}')
    assert with_null_payload.payload == {}


@pytest.mark.parametrize(
    "frame",
    [
        b'{"type": "renegotiate", "payload": {}}',
        b"{not json",
        b'["offer"]',
        b'{"payload": {}}',
        b'{"type": "join", "to": 5}',
        b'{"type": "join", "id": ""}',
    ],
)
def test_decode_fails_closed(frame: bytes) -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode(frame)
    assert excinfo.value.code == "E_DECODE"


def test_sdp_payload_requires_type_and_sdp() -> None:
    with pytest.raises(DecodeError):
        decode(b'{"type": "offer", "payload": {"sdp": "v=0"}}')
    with pytest.raises(DecodeError):
        decode(b'{"type": "answer", "payload": {"type": "answer", "sdp": 42}}')

    # Deep SDP syntax is not our concern.
    envelope = decode(b'{"type": "answer", "payload": {"type": "answer", "sdp": "garbage"}}')
    assert envelope.payload["sdp"] == "garbage"


def test_candidate_payload_requires_candidate_key() -> None:
    with pytest.raises(DecodeError):
        decode(b'{"type": "ice-candidate", "payload": {"sdpMid": "0"}}')

    end_of_candidates = decode(b'{"type": "ice-candidate", "payload": {"candidate": null}}')
    assert end_of_candidates.payload["candidate"] is None


def test_envelope_is_immutable() -> None:
    payload = {"type": "offer", "sdp": "v=0"}
    envelope = Envelope(type=EnvelopeType.OFFER, from_peer="alice", payload=payload)
    payload["sdp"] = "changed"

    assert envelope.payload["sdp"] == "v=0"
    with pytest.raises(TypeError):
        envelope.payload["sdp"] = "changed"  # type: ignore[index]
    with pytest.raises(dataclasses.FrozenInstanceError):
        envelope.to_peer = "bob"  # type: ignore[misc]

    stamped = Envelope(type=EnvelopeType.JOIN).with_sender("carol")
    assert stamped.from_peer == "carol"
    assert stamped.with_sender("carol") is stamped


def test_envelopes_are_hashable() -> None:
    envelope = Envelope(type=EnvelopeType.ICE_CANDIDATE, from_peer="alice", payload={"candidate": "c-1"})
    copy = decode(encode(envelope))

    assert copy == envelope
    assert hash(copy) == hash(envelope)
    assert len({envelope, copy}) == 1


def test_glare_notice_names_winner_and_discarded_offer() -> None:
    notice = make_glare_notice("bob", "alice", "offer-b")

    assert notice.type is EnvelopeType.ERROR
    assert notice.to_peer == "bob"
    assert notice.ref == "offer-b"
    assert notice.payload["code"] == "E_GLARE"
    assert notice.payload["role"] == "responder"
    assert notice.payload["winner"] == "alice"


def test_glare_notice_to_winner_keeps_initiator_role() -> None:
    notice = make_glare_notice("alice", "alice", "offer-b")

    assert notice.to_peer == "alice"
    assert notice.ref == "offer-b"
    assert notice.payload["role"] == "initiator"
    assert notice.payload["winner"] == "alice"
