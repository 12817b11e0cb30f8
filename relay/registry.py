"""
Session registry: which peers are connected and which room they are in.

The registry is the only owner of :class:`Peer` objects.  Membership changes
are announced to the other members with ``join``/``leave`` envelopes; callers
never inspect the internal maps directly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from .envelope import Deliver, make_join, make_leave
from .errors import DuplicatePeer, SessionFull, SessionNotFound
from .negotiation import NegotiationState, NegotiationStateMachine, PeerRole

LOG = logging.getLogger(__name__)

MonotonicCallable = Callable[[], float]


@dataclass
class Peer:
    peer_id: str
    session_id: str
    role: PeerRole = PeerRole.UNASSIGNED
    connection_state: NegotiationState = NegotiationState.IDLE
    joined_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "peerId": self.peer_id,
            "sessionId": self.session_id,
            "role": self.role.value,
            "connectionState": self.connection_state.value,
            "joinedAt": self.joined_at,
        }


@dataclass(frozen=True, slots=True)
class PeerHandle:
    """What a newly registered peer learns about its session."""

    peer_id: str
    session_id: str
    peers: Tuple[str, ...] = ()


@dataclass
class Session:
    session_id: str
    max_members: int
    members: Set[str] = field(default_factory=set)
    created_at: float = 0.0
    last_activity: float = 0.0
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def touch(self, now: float) -> None:
        self.last_activity = now


class SessionRegistry:
    """
    Track sessions and their members.

    ``_index_lock`` guards peer id reservation and session creation and
    removal; per-session membership is guarded by ``Session.lock``.
    ``register`` releases the index lock before waiting on a session, so a
    busy session never stalls joins elsewhere.  Neither lock is held while a
    message is written to a socket.
    """

    def __init__(
        self,
        negotiations: NegotiationStateMachine,
        deliver: Deliver,
        *,
        max_members: int = 2,
        monotonic: Optional[MonotonicCallable] = None,
    ) -> None:
        self.negotiations = negotiations
        self.max_members = max(1, int(max_members))
        self._deliver = deliver
        self._monotonic: MonotonicCallable = monotonic if monotonic is not None else time.monotonic
        self._sessions: Dict[str, Session] = {}
        self._peers: Dict[str, Peer] = {}
        self._joining: Set[str] = set()
        self._index_lock = asyncio.Lock()

    # ------------------------------------------------------------------ membership

    async def register(self, session_id: str, peer_id: str) -> PeerHandle:
        while True:
            now = self._monotonic()
            async with self._index_lock:
                if peer_id in self._peers or peer_id in self._joining:
                    raise DuplicatePeer(f"peer {peer_id} is already registered")
                session = self._sessions.get(session_id)
                if session is None:
                    session = Session(
                        session_id=session_id,
                        max_members=self.max_members,
                        created_at=now,
                        last_activity=now,
                    )
                    self._sessions[session_id] = session
                self._joining.add(peer_id)

            try:
                async with session.lock:
                    if session.closed:
                        # Emptied and collected while we waited; resolve it again.
                        continue
                    if len(session.members) >= session.max_members:
                        raise SessionFull(
                            f"session {session_id} already has {len(session.members)} members"
                        )
                    others = tuple(sorted(session.members))
                    session.members.add(peer_id)
                    session.touch(now)
                    self._peers[peer_id] = Peer(peer_id=peer_id, session_id=session_id, joined_at=now)
                    break
            finally:
                self._joining.discard(peer_id)

        LOG.info("Peer %s joined session=%s (members=%d)", peer_id, session_id, len(others) + 1)
        self._deliver(peer_id, make_join(session_id, peer_id, to_peer=peer_id, peers=list(others)))
        announcement = make_join(session_id, peer_id)
        for other in others:
            self._deliver(other, announcement)
        return PeerHandle(peer_id=peer_id, session_id=session_id, peers=others)

    async def unregister(self, peer_id: str, reason: str = "closed") -> bool:
        """Remove ``peer_id``; returns False when it was not registered."""

        async with self._index_lock:
            peer = self._peers.pop(peer_id, None)
            if peer is None:
                return False
            session = self._sessions.get(peer.session_id)
            remaining: List[str] = []
            if session is not None:
                async with session.lock:
                    session.members.discard(peer_id)
                    session.touch(self._monotonic())
                    remaining = sorted(session.members)
                    if not remaining:
                        session.closed = True
                        self._sessions.pop(session.session_id, None)

        records = await self.negotiations.discard_peer(peer.session_id, peer_id)
        for record in records:
            other = self._peers.get(record.other(peer_id))
            if other is not None:
                other.connection_state = NegotiationState.FAILED

        LOG.info(
            "Peer %s left session=%s reason=%s (remaining=%d)",
            peer_id,
            peer.session_id,
            reason,
            len(remaining),
        )
        if remaining:
            notice = make_leave(peer.session_id, peer_id, reason)
            for other_id in remaining:
                self._deliver(other_id, notice)
        else:
            LOG.debug("Session %s is empty and was removed", peer.session_id)
        return True

    def members_of(self, session_id: str) -> FrozenSet[str]:
        session = self._sessions.get(session_id)
        if session is None:
            return frozenset()
        return frozenset(session.members)

    # ------------------------------------------------------------------ lookups

    def now(self) -> float:
        return self._monotonic()

    def peer(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    def session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def session_of(self, peer_id: str) -> Session:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise SessionNotFound(f"peer {peer_id} is not registered")
        session = self._sessions.get(peer.session_id)
        if session is None or session.closed:
            raise SessionNotFound(f"session {peer.session_id} no longer exists")
        return session

    def set_role(self, peer_id: str, role: PeerRole) -> None:
        peer = self._peers.get(peer_id)
        if peer is not None:
            peer.role = role

    def set_connection_state(self, peer_id: str, state: NegotiationState) -> None:
        peer = self._peers.get(peer_id)
        if peer is not None:
            peer.connection_state = state

    def session_ids(self) -> List[str]:
        return sorted(self._sessions)

    def idle_sessions(self, timeout: float, now: Optional[float] = None) -> List[Session]:
        """Sessions quiet for ``timeout`` seconds that hold no connected pair."""

        if timeout <= 0:
            return []
        if now is None:
            now = self._monotonic()
        idle = []
        for session in list(self._sessions.values()):
            if now - session.last_activity < timeout:
                continue
            records = self.negotiations.records_in(session.session_id)
            if any(record.state is NegotiationState.CONNECTED for record in records):
                continue
            idle.append(session)
        return idle

    def snapshot(self, session_id: str) -> Optional[dict]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        peers = [self._peers[pid].to_dict() for pid in sorted(session.members) if pid in self._peers]
        return {
            "sessionId": session.session_id,
            "maxMembers": session.max_members,
            "createdAt": session.created_at,
            "lastActivity": session.last_activity,
            "peers": peers,
            "negotiations": [
                record.to_dict() for record in self.negotiations.records_in(session.session_id)
            ],
        }

    def __len__(self) -> int:
        return len(self._peers)


__all__ = ["Peer", "PeerHandle", "Session", "SessionRegistry"]
