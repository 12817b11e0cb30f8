"""
Error taxonomy shared by the registry, negotiation engine, router and codec.
"""

from __future__ import annotations

from typing import Optional


class SignalingError(RuntimeError):
    """Base class for relay errors that can be reported back to a peer."""

    code = "E_SIGNALING"

    def __init__(self, message: str, *, ref: Optional[str] = None) -> None:
        super().__init__(message)
        self.ref = ref

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": str(self)}
        if self.ref is not None:
            payload["ref"] = self.ref
        return payload


class DuplicatePeer(SignalingError):
    """Raised when a peer id is registered twice."""

    code = "E_DUPLICATE_PEER"


class SessionFull(SignalingError):
    """Raised when a session already holds its member cap."""

    code = "E_SESSION_FULL"


class SessionNotFound(SignalingError):
    """Raised when the sender's session no longer exists."""

    code = "E_SESSION_NOT_FOUND"


class UnknownPeer(SignalingError):
    """Raised when a destination does not resolve inside the sender's session."""

    code = "E_UNKNOWN_PEER"


class StaleAnswer(SignalingError):
    """Raised when an answer does not match the pending offer."""

    code = "E_STALE_ANSWER"


class NegotiationConflict(SignalingError):
    """Raised when a negotiation event is not valid in the record's state."""

    code = "E_NEGOTIATION_CONFLICT"


class DecodeError(SignalingError):
    """Raised when an inbound frame is not a valid envelope."""

    code = "E_DECODE"


class TransportClosed(SignalingError):
    """Raised when enqueueing to a connection whose transport is gone."""

    code = "E_TRANSPORT_CLOSED"


class ConfigError(ValueError):
    """Raised for invalid relay configuration."""


__all__ = [
    "ConfigError",
    "DecodeError",
    "DuplicatePeer",
    "NegotiationConflict",
    "SessionFull",
    "SessionNotFound",
    "SignalingError",
    "StaleAnswer",
    "TransportClosed",
    "UnknownPeer",
]
