"""
Shared relay state container.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from ..config import RelayConfig
from ..envelope import Envelope
from ..errors import TransportClosed
from ..negotiation import NegotiationStateMachine
from ..registry import MonotonicCallable, SessionRegistry
from ..router import RelayRouter

LOG = logging.getLogger(__name__)


class Outbox(Protocol):
    def enqueue(self, envelope: Envelope) -> None: ...


class RelayState:
    """
    Aggregated state shared between the WebSocket hub and the REST layer.

    ``outboxes`` maps a peer id to whatever owns that peer's outbound queue;
    :meth:`deliver` is the single outbound path used by the registry, the
    negotiation engine and the router.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        monotonic: Optional[MonotonicCallable] = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.outboxes: Dict[str, Outbox] = {}
        self.negotiations = NegotiationStateMachine(
            self.deliver,
            glare_policy=self.config.glare_policy,
            max_pending_candidates=self.config.max_pending_candidates,
        )
        self.registry = SessionRegistry(
            self.negotiations,
            self.deliver,
            max_members=self.config.max_members,
            monotonic=monotonic,
        )
        self.router = RelayRouter(self.registry, self.negotiations, self.deliver)

    def deliver(self, peer_id: str, envelope: Envelope) -> bool:
        outbox = self.outboxes.get(peer_id)
        if outbox is None:
            LOG.debug("No outbox for %s; dropping %s %s", peer_id, envelope.type.value, envelope.id)
            return False
        try:
            outbox.enqueue(envelope)
        except TransportClosed:
            LOG.debug("Transport for %s closed; dropping %s %s", peer_id, envelope.type.value, envelope.id)
            return False
        return True

    def snapshot(self) -> dict:
        sessions = []
        for session_id in self.registry.session_ids():
            session = self.registry.session(session_id)
            if session is None:
                continue
            sessions.append(
                {
                    "sessionId": session_id,
                    "members": len(session.members),
                    "maxMembers": session.max_members,
                    "lastActivity": session.last_activity,
                }
            )
        return {"sessions": sessions, "peers": len(self.registry)}

    def session_detail(self, session_id: str) -> Optional[dict]:
        return self.registry.snapshot(session_id)
