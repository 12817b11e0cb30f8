"""
Relay router: resolve destinations and forward envelopes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .envelope import NEGOTIATION_TYPES, Deliver, Envelope, EnvelopeType
from .errors import SessionNotFound, SignalingError, UnknownPeer
from .negotiation import NegotiationStateMachine, Transition
from .registry import SessionRegistry

LOG = logging.getLogger(__name__)

# Broadcasts of these only reach peers the sender is already negotiating with.
PAIR_SCOPED_TYPES = frozenset({EnvelopeType.ICE_CANDIDATE, EnvelopeType.CONNECTED})


@dataclass
class RouteResult:
    envelope: Envelope
    delivered_to: Tuple[str, ...] = ()
    buffered_for: Tuple[str, ...] = ()
    dropped: bool = False
    failures: Dict[str, SignalingError] = field(default_factory=dict)


class RelayRouter:
    """
    Forward envelopes between members of the sender's session.

    Offers, answers, candidates and connected reports pass through the
    negotiation state machine; join/leave/error envelopes are relayed as-is.
    Delivery is fire-and-forget: the envelope is queued for the destination's
    writer task and nothing waits for it to reach the socket.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        negotiations: NegotiationStateMachine,
        deliver: Deliver,
    ) -> None:
        self.registry = registry
        self.negotiations = negotiations
        self._deliver = deliver

    async def route(self, envelope: Envelope) -> RouteResult:
        sender = envelope.from_peer
        if sender is None:
            raise UnknownPeer("envelope has no sender", ref=envelope.id)

        session = self.registry.session_of(sender)
        async with session.lock:
            if session.closed or sender not in session.members:
                raise SessionNotFound(f"session {session.session_id} no longer exists", ref=envelope.id)

            if envelope.to_peer is not None:
                if envelope.to_peer == sender or envelope.to_peer not in session.members:
                    raise UnknownPeer(
                        f"peer {envelope.to_peer} is not in session {session.session_id}",
                        ref=envelope.id,
                    )
                targets = [envelope.to_peer]
            else:
                targets = sorted(session.members - {sender})

            orphans = [target for target in targets if self.registry.peer(target) is None]
            if orphans:
                LOG.warning(
                    "Session %s lists unregistered peers %s; discarding their records",
                    session.session_id,
                    orphans,
                )
                for orphan in orphans:
                    session.members.discard(orphan)
                    await self.negotiations.discard_peer(session.session_id, orphan)
                raise SessionNotFound(
                    f"session {session.session_id} referenced departed peers", ref=envelope.id
                )

            session.touch(self.registry.now())

            if envelope.type not in NEGOTIATION_TYPES:
                delivered = tuple(target for target in targets if self._deliver(target, envelope))
                LOG.debug("Relayed %s from %s to %s", envelope.type.value, sender, delivered)
                return RouteResult(envelope=envelope, delivered_to=delivered)

            return await self._negotiate(session.session_id, envelope, targets)

    async def _negotiate(self, session_id: str, envelope: Envelope, targets: List[str]) -> RouteResult:
        delivered: List[str] = []
        buffered: List[str] = []
        failures: Dict[str, SignalingError] = {}
        dropped = False

        if envelope.is_broadcast and envelope.type in PAIR_SCOPED_TYPES:
            sender = envelope.from_peer or ""
            skipped = [t for t in targets if not self.negotiations.is_negotiating(session_id, sender, t)]
            if skipped:
                LOG.debug("Broadcast %s from %s skips idle pairs with %s", envelope.type.value, sender, skipped)
                targets = [t for t in targets if t not in skipped]

        for target in targets:
            try:
                transition = await self.negotiations.apply(session_id, envelope, target)
            except SignalingError as exc:
                if envelope.to_peer is not None:
                    raise
                failures[target] = exc
                continue

            self._apply_transition(envelope.from_peer or "", target, transition)
            if transition.forwarded:
                delivered.append(target)
            if transition.buffered:
                buffered.append(target)
            dropped = dropped or transition.dropped

        LOG.debug(
            "Routed %s %s from %s: delivered=%s buffered=%s dropped=%s",
            envelope.type.value,
            envelope.id,
            envelope.from_peer,
            delivered,
            buffered,
            dropped,
        )
        return RouteResult(
            envelope=envelope,
            delivered_to=tuple(delivered),
            buffered_for=tuple(buffered),
            dropped=dropped,
            failures=failures,
        )

    def _apply_transition(self, sender: str, target: str, transition: Transition) -> None:
        for peer_id, role in transition.roles.items():
            self.registry.set_role(peer_id, role)
        self.registry.set_connection_state(sender, transition.state)
        self.registry.set_connection_state(target, transition.state)


__all__ = ["RelayRouter", "RouteResult"]
