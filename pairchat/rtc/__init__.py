"""
Transports and media negotiation.
"""

from __future__ import annotations

from .direct import DirectTransport, parse_description
from .matchmaking import Available, MatchmakingTransport, Unavailable, resolve_matchmaking
from .media import MediaCapture, MediaNegotiator
from .transport import RawChannel, TransportAdapter, TransportCapabilities, TransportEvents

__all__ = [
    "Available",
    "DirectTransport",
    "MatchmakingTransport",
    "MediaCapture",
    "MediaNegotiator",
    "RawChannel",
    "TransportAdapter",
    "TransportCapabilities",
    "TransportEvents",
    "Unavailable",
    "parse_description",
    "resolve_matchmaking",
]
