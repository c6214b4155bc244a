"""
Application protocol, file transfer and call signalling over the channel.
"""

from __future__ import annotations

from .protocol import (
    BinaryChunk,
    ControlMessage,
    DataChannelProtocol,
    FileCompleteMessage,
    FileMetadataMessage,
    PlainTextMessage,
    parse_frame,
)
from .signals import CallAction, CallEvent, CallSignalingRouter
from .transfer import FileTransferEngine

__all__ = [
    "BinaryChunk",
    "CallAction",
    "CallEvent",
    "CallSignalingRouter",
    "ControlMessage",
    "DataChannelProtocol",
    "FileCompleteMessage",
    "FileMetadataMessage",
    "FileTransferEngine",
    "PlainTextMessage",
    "parse_frame",
]
