"""
ASGI surface of the relay: WebSocket signaling endpoint and REST inspection.
"""

from __future__ import annotations

from .server import PeerConnection, SignalingHub, create_app
from .state import RelayState

__all__ = ["PeerConnection", "RelayState", "SignalingHub", "create_app"]
