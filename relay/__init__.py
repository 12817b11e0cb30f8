"""
WebRTC signaling relay package.

Peers connect over a WebSocket, join a session and exchange SDP offers,
answers and ICE candidates through the relay.  The relay never touches media;
it only orders and forwards the messages that set a peer connection up, and
resolves simultaneous offers (glare) deterministically.
"""

from __future__ import annotations

from .config import RelayConfig
from .envelope import Envelope, EnvelopeType, decode, encode

__all__ = [
    "Envelope",
    "EnvelopeType",
    "RelayConfig",
    "decode",
    "encode",
]

__version__ = "0.1.0"
