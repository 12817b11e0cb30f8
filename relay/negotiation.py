"""
Per-pair offer/answer bookkeeping with deterministic glare resolution.

Every unordered pair of peers inside a session gets one
:class:`NegotiationRecord`.  The state machine inspects only the envelope
type and the sender/target ids; payloads are forwarded untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .envelope import Deliver, Envelope, EnvelopeType, make_glare_notice
from .errors import ConfigError, NegotiationConflict, StaleAnswer, UnknownPeer

LOG = logging.getLogger(__name__)

GLARE_POLICIES = ("lexicographic",)

PairKey = Tuple[str, str]


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    FAILED = "failed"


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"
    UNASSIGNED = "unassigned"


# Both sides hold a remote description once the answer has been relayed.
DESCRIBED_STATES = frozenset({NegotiationState.ANSWER_SENT, NegotiationState.CONNECTED})
NEGOTIATING_STATES = DESCRIBED_STATES | {NegotiationState.OFFER_SENT}
RECORD_OPENING_TYPES = frozenset({EnvelopeType.OFFER, EnvelopeType.ICE_CANDIDATE})


def pair_key(peer_a: str, peer_b: str) -> PairKey:
    return (peer_a, peer_b) if peer_a < peer_b else (peer_b, peer_a)


@dataclass
class NegotiationRecord:
    session_id: str
    peers: PairKey
    state: NegotiationState = NegotiationState.IDLE
    offerer: Optional[str] = None
    pending_offer_id: Optional[str] = None
    pending_candidates: List[Tuple[str, Envelope]] = field(default_factory=list)
    connected_reports: Set[str] = field(default_factory=set)
    rounds: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def other(self, peer_id: str) -> str:
        first, second = self.peers
        return second if peer_id == first else first

    @property
    def responder(self) -> Optional[str]:
        if self.offerer is None:
            return None
        return self.other(self.offerer)

    def drop_candidates_from(self, peer_id: str) -> int:
        kept = [item for item in self.pending_candidates if item[1].from_peer != peer_id]
        dropped = len(self.pending_candidates) - len(kept)
        self.pending_candidates = kept
        return dropped

    def fail(self) -> int:
        discarded = len(self.pending_candidates)
        self.state = NegotiationState.FAILED
        self.pending_candidates.clear()
        self.connected_reports.clear()
        return discarded

    def to_dict(self) -> dict:
        return {
            "peers": list(self.peers),
            "state": self.state.value,
            "offerer": self.offerer,
            "pendingOfferId": self.pending_offer_id,
            "pendingCandidates": len(self.pending_candidates),
            "connectedReports": sorted(self.connected_reports),
            "rounds": self.rounds,
        }


@dataclass
class Transition:
    """Outcome of applying one envelope to one record."""

    state: NegotiationState
    forwarded: bool = False
    buffered: bool = False
    dropped: bool = False
    flushed: int = 0
    roles: Dict[str, PeerRole] = field(default_factory=dict)


class NegotiationStateMachine:
    """
    Owns every NegotiationRecord and applies offer/answer/candidate events.

    Deliveries are issued while the record lock is held.  ``deliver`` only
    enqueues onto the destination's outbound queue, so the answer and any
    candidates flushed behind it are queued before a candidate that arrives
    afterwards.
    """

    def __init__(
        self,
        deliver: Deliver,
        *,
        glare_policy: str = "lexicographic",
        max_pending_candidates: int = 256,
    ) -> None:
        if glare_policy not in GLARE_POLICIES:
            raise ConfigError(f"Unsupported glare policy '{glare_policy}'")
        self._deliver = deliver
        self.glare_policy = glare_policy
        self.max_pending_candidates = max(1, int(max_pending_candidates))
        self._records: Dict[Tuple[str, PairKey], NegotiationRecord] = {}

    # ------------------------------------------------------------------ lookup

    def record_for(self, session_id: str, peer_a: str, peer_b: str) -> Optional[NegotiationRecord]:
        return self._records.get((session_id, pair_key(peer_a, peer_b)))

    def records_in(self, session_id: str) -> List[NegotiationRecord]:
        return [record for (sid, _), record in self._records.items() if sid == session_id]

    def is_negotiating(self, session_id: str, peer_a: str, peer_b: str) -> bool:
        record = self.record_for(session_id, peer_a, peer_b)
        return record is not None and record.state in NEGOTIATING_STATES

    def _record(self, session_id: str, envelope: Envelope, sender: str, target: str) -> NegotiationRecord:
        key = (session_id, pair_key(sender, target))
        record = self._records.get(key)
        if record is not None:
            return record
        # Only an offer, or a candidate buffered ahead of one, opens a record.
        if envelope.type is EnvelopeType.ANSWER:
            raise StaleAnswer(f"no pending offer from {target} for {sender} to answer", ref=envelope.id)
        if envelope.type not in RECORD_OPENING_TYPES:
            raise NegotiationConflict(
                f"{sender} and {target} have not started negotiating", ref=envelope.id
            )
        record = NegotiationRecord(session_id=session_id, peers=key[1])
        self._records[key] = record
        return record

    def winner(self, peer_a: str, peer_b: str) -> str:
        return min(peer_a, peer_b)

    # ------------------------------------------------------------------ events

    async def apply(self, session_id: str, envelope: Envelope, target: str) -> Transition:
        sender = envelope.from_peer
        if sender is None or sender == target:
            raise UnknownPeer(f"cannot negotiate from {sender!r} to {target!r}", ref=envelope.id)

        record = self._record(session_id, envelope, sender, target)
        async with record.lock:
            # Teardown may have failed and dropped the record while we waited.
            if record.state is NegotiationState.FAILED or self.record_for(session_id, sender, target) is not record:
                raise UnknownPeer(f"peer {target} left session {session_id}", ref=envelope.id)

            if envelope.type is EnvelopeType.OFFER:
                return self._on_offer(record, envelope, sender, target)
            if envelope.type is EnvelopeType.ANSWER:
                return self._on_answer(record, envelope, sender, target)
            if envelope.type is EnvelopeType.ICE_CANDIDATE:
                return self._on_candidate(record, envelope, target)
            if envelope.type is EnvelopeType.CONNECTED:
                return self._on_connected(record, envelope, sender)
        raise NegotiationConflict(f"{envelope.type.value} is not a negotiation event", ref=envelope.id)

    def _start_round(self, record: NegotiationRecord, envelope: Envelope, sender: str, target: str) -> Transition:
        if record.state in DESCRIBED_STATES:
            LOG.info("Renegotiation in session=%s pair=%s by %s", record.session_id, record.peers, sender)
            record.pending_candidates.clear()
            record.connected_reports.clear()
        record.state = NegotiationState.OFFER_SENT
        record.offerer = sender
        record.pending_offer_id = envelope.id
        record.rounds += 1
        self._deliver(target, envelope)
        return Transition(
            state=record.state,
            forwarded=True,
            roles={sender: PeerRole.INITIATOR, target: PeerRole.RESPONDER},
        )

    def _on_offer(self, record: NegotiationRecord, envelope: Envelope, sender: str, target: str) -> Transition:
        if record.state is not NegotiationState.OFFER_SENT:
            return self._start_round(record, envelope, sender, target)

        if record.offerer == sender:
            raise NegotiationConflict(
                f"offer {record.pending_offer_id} from {sender} is still awaiting an answer",
                ref=envelope.id,
            )

        # Glare: both sides offered before seeing the other's offer.
        winner = self.winner(sender, target)
        roles = {winner: PeerRole.INITIATOR, record.other(winner): PeerRole.RESPONDER}
        if winner == target:
            dropped = record.drop_candidates_from(sender)
            LOG.info(
                "Glare in session=%s: keeping offer from %s, dropping %s from %s (%d candidates)",
                record.session_id,
                target,
                envelope.id,
                sender,
                dropped,
            )
            self._deliver(sender, make_glare_notice(sender, target, envelope.id))
            return Transition(state=record.state, dropped=True, roles=roles)

        discarded = record.pending_offer_id or ""
        dropped = record.drop_candidates_from(target)
        LOG.info(
            "Glare in session=%s: offer from %s replaces %s from %s (%d candidates)",
            record.session_id,
            sender,
            discarded,
            target,
            dropped,
        )
        record.offerer = sender
        record.pending_offer_id = envelope.id
        self._deliver(target, make_glare_notice(target, sender, discarded))
        self._deliver(target, envelope)
        # The winner already holds the discarded offer.
        self._deliver(sender, make_glare_notice(sender, sender, discarded))
        return Transition(state=record.state, forwarded=True, roles=roles)

    def _on_answer(self, record: NegotiationRecord, envelope: Envelope, sender: str, target: str) -> Transition:
        if record.state is not NegotiationState.OFFER_SENT or record.offerer != target:
            raise StaleAnswer(f"no pending offer from {target} for {sender} to answer", ref=envelope.id)
        if envelope.ref is not None and envelope.ref != record.pending_offer_id:
            raise StaleAnswer(
                f"answer references offer {envelope.ref}, pending offer is {record.pending_offer_id}",
                ref=envelope.id,
            )

        record.state = NegotiationState.ANSWER_SENT
        self._deliver(target, envelope)
        buffered, record.pending_candidates = record.pending_candidates, []
        for destination, candidate in buffered:
            self._deliver(destination, candidate)
        LOG.debug(
            "Answer relayed in session=%s pair=%s; flushed %d candidates",
            record.session_id,
            record.peers,
            len(buffered),
        )
        return Transition(state=record.state, forwarded=True, flushed=len(buffered))

    def _on_candidate(self, record: NegotiationRecord, envelope: Envelope, target: str) -> Transition:
        if record.state in DESCRIBED_STATES:
            self._deliver(target, envelope)
            return Transition(state=record.state, forwarded=True)

        if len(record.pending_candidates) >= self.max_pending_candidates:
            raise NegotiationConflict(
                f"candidate buffer for {record.peers} is full ({self.max_pending_candidates})",
                ref=envelope.id,
            )
        record.pending_candidates.append((target, envelope))
        return Transition(state=record.state, buffered=True)

    def _on_connected(self, record: NegotiationRecord, envelope: Envelope, sender: str) -> Transition:
        if record.state not in DESCRIBED_STATES:
            raise NegotiationConflict(
                f"{sender} reported connected before an answer was relayed", ref=envelope.id
            )
        record.connected_reports.add(sender)
        if record.state is not NegotiationState.CONNECTED and set(record.peers) <= record.connected_reports:
            record.state = NegotiationState.CONNECTED
            LOG.info("Pair %s connected in session=%s", record.peers, record.session_id)
        return Transition(state=record.state)

    # ------------------------------------------------------------------ teardown

    async def discard_peer(self, session_id: str, peer_id: str) -> List[NegotiationRecord]:
        """Fail and remove every record in ``session_id`` that involves ``peer_id``."""

        keys = [
            key for key in self._records if key[0] == session_id and peer_id in key[1]
        ]
        records = [self._records.pop(key) for key in keys]
        for record in records:
            async with record.lock:
                discarded = record.fail()
            LOG.debug(
                "Record %s in session=%s failed; %d buffered candidates discarded",
                record.peers,
                session_id,
                discarded,
            )
        return records


__all__ = [
    "GLARE_POLICIES",
    "NegotiationRecord",
    "NegotiationState",
    "NegotiationStateMachine",
    "PeerRole",
    "Transition",
    "pair_key",
]
