"""
Signaling envelope model and its JSON wire codec.

Frames on a peer's socket look like::

    {"type": "offer", "from": "a", "to": "b",
     "payload": {"type": "offer", "sdp": "v=0..."},
     "id": "3f2c...", "ref": null}

``from`` may be omitted by clients (the relay stamps it), ``to`` set to
``null`` broadcasts to the rest of the session, ``id`` is generated when
absent and ``ref`` points at the envelope being answered.
"""

from __future__ import annotations

import uuid
from types import MappingProxyType
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DecodeError, SignalingError


class EnvelopeType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    JOIN = "join"
    LEAVE = "leave"
    ERROR = "error"
    CONNECTED = "connected"


SDP_TYPES = frozenset({EnvelopeType.OFFER, EnvelopeType.ANSWER})
NEGOTIATION_TYPES = frozenset(
    {
        EnvelopeType.OFFER,
        EnvelopeType.ANSWER,
        EnvelopeType.ICE_CANDIDATE,
        EnvelopeType.CONNECTED,
    }
)


def new_envelope_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class Envelope:
    """
    Immutable signaling message.

    The payload is copied into a read-only mapping on construction and is
    left out of the hash; nested values are not copied.  Routing only ever
    looks at ``type``, ``from_peer`` and ``to_peer``.
    """

    type: EnvelopeType
    from_peer: Optional[str] = None
    to_peer: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict, hash=False)
    id: str = field(default_factory=new_envelope_id)
    ref: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", EnvelopeType(self.type))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload or {})))

    @property
    def is_broadcast(self) -> bool:
        return self.to_peer is None

    def with_sender(self, peer_id: str) -> "Envelope":
        if self.from_peer == peer_id:
            return self
        return replace(self, from_peer=peer_id)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "from": self.from_peer,
            "to": self.to_peer,
            "payload": dict(self.payload),
            "id": self.id,
            "ref": self.ref,
        }


# Outbound hook: enqueue ``envelope`` for ``peer_id``; returns False when the
# peer has no open transport.
Deliver = Callable[[str, Envelope], bool]


class WireEnvelope(BaseModel):
    """Validated JSON shape of an envelope."""

    type: EnvelopeType
    from_peer: Optional[str] = Field(default=None, alias="from")
    to_peer: Optional[str] = Field(default=None, alias="to")
    payload: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = Field(default=None, min_length=1)
    ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("payload", mode="before")
    @classmethod
    def _default_payload(cls, value: object) -> object:
        return {} if value is None else value

    @model_validator(mode="after")
    def _check_payload_shape(self) -> "WireEnvelope":
        if self.type in SDP_TYPES:
            if not isinstance(self.payload.get("type"), str) or not isinstance(
                self.payload.get("sdp"), str
            ):
                raise ValueError(
                    f"{self.type.value} payload requires string 'type' and 'sdp' fields"
                )
        elif self.type is EnvelopeType.ICE_CANDIDATE and "candidate" not in self.payload:
            raise ValueError("ice-candidate payload requires a 'candidate' field")
        return self


def encode(envelope: Envelope) -> bytes:
    wire = WireEnvelope.model_validate(envelope.to_wire())
    return wire.model_dump_json(by_alias=True).encode("utf-8")


def decode(data: Union[bytes, str]) -> Envelope:
    """Parse one frame; anything short of a complete valid envelope raises ``DecodeError``."""

    try:
        wire = WireEnvelope.model_validate_json(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "envelope"
        raise DecodeError(f"invalid envelope ({location}): {first.get('msg', exc)}") from exc

    return Envelope(
        type=wire.type,
        from_peer=wire.from_peer,
        to_peer=wire.to_peer,
        payload=wire.payload,
        id=wire.id if wire.id is not None else new_envelope_id(),
        ref=wire.ref,
    )


def make_error(to_peer: Optional[str], error: SignalingError) -> Envelope:
    return Envelope(
        type=EnvelopeType.ERROR,
        to_peer=to_peer,
        payload=error.to_payload(),
        ref=error.ref,
    )


def make_join(
    session_id: str,
    peer_id: str,
    *,
    to_peer: Optional[str] = None,
    peers: Optional[list] = None,
) -> Envelope:
    payload: Dict[str, Any] = {"sessionId": session_id, "peerId": peer_id}
    if peers is not None:
        payload["peers"] = list(peers)
    return Envelope(type=EnvelopeType.JOIN, from_peer=peer_id, to_peer=to_peer, payload=payload)


def make_leave(session_id: str, peer_id: str, reason: str) -> Envelope:
    return Envelope(
        type=EnvelopeType.LEAVE,
        from_peer=peer_id,
        payload={"sessionId": session_id, "peerId": peer_id, "reason": reason},
    )


def make_glare_notice(to_peer: str, winner: str, discarded_offer_id: str) -> Envelope:
    """
    Tell ``to_peer`` how a glare was resolved.

    The loser is told to continue as responder.  When the winner already
    received the discarded offer, it is told to ignore it and stay initiator.
    """

    if to_peer == winner:
        role = "initiator"
        message = f"offer {discarded_offer_id} was discarded; keep your offer"
    else:
        role = "responder"
        message = f"concurrent offer from {winner} wins; continue as responder"
    return Envelope(
        type=EnvelopeType.ERROR,
        to_peer=to_peer,
        payload={
            "code": "E_GLARE",
            "message": message,
            "role": role,
            "winner": winner,
            "ref": discarded_offer_id,
        },
        ref=discarded_offer_id,
    )


__all__ = [
    "Deliver",
    "Envelope",
    "EnvelopeType",
    "NEGOTIATION_TYPES",
    "WireEnvelope",
    "decode",
    "encode",
    "make_error",
    "make_glare_notice",
    "make_join",
    "make_leave",
    "new_envelope_id",
]
