"""
Application protocol carried over the session channel.

Textual frames are JSON envelopes tagged with ``type`` (``kind`` is accepted
too); anything that does not parse, or carries no recognised tag, is plain chat
text.  Binary frames are file chunks.  Chunks carry no sequence numbers, so
every outbound send for a session goes through one lock and a file holds it
for its whole metadata/chunks/complete run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Union

from ..errors import ProtocolViolation, SendFailure
from ..rtc.transport import Payload, RawChannel
from ..session import FileMetadata

LOG = logging.getLogger(__name__)

CONTROL = "control"
FILE_METADATA = "file-metadata"
FILE_COMPLETE = "file-complete"
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class ControlMessage:
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        message: Dict[str, Any] = dict(self.payload)
        message["type"] = CONTROL
        message["action"] = self.action
        return message


@dataclass(frozen=True)
class FileMetadataMessage:
    metadata: FileMetadata


@dataclass(frozen=True)
class FileCompleteMessage:
    pass


@dataclass(frozen=True)
class PlainTextMessage:
    text: str


@dataclass(frozen=True)
class BinaryChunk:
    data: bytes

    def __len__(self) -> int:
        return len(self.data)


Message = Union[ControlMessage, FileMetadataMessage, FileCompleteMessage, PlainTextMessage, BinaryChunk]


def parse_frame(payload: Any) -> Message:
    """
    Classify one inbound frame.

    Raises :class:`ProtocolViolation` only for frames with a recognised tag and
    unusable fields; callers drop those with a warning.
    """

    if isinstance(payload, (bytes, bytearray, memoryview)):
        return BinaryChunk(bytes(payload))

    text = payload if isinstance(payload, str) else str(payload)
    try:
        envelope = json.loads(text)
    except ValueError:
        return PlainTextMessage(text)
    if not isinstance(envelope, dict):
        return PlainTextMessage(text)

    tag = envelope.get("type", envelope.get("kind"))
    if tag == CONTROL:
        action = envelope.get("action")
        if not isinstance(action, str) or not action:
            raise ProtocolViolation("control message without an action")
        payload_fields = {
            key: value for key, value in envelope.items() if key not in ("type", "kind", "action")
        }
        return ControlMessage(action=action, payload=payload_fields)
    if tag == FILE_METADATA:
        return FileMetadataMessage(_metadata_from(envelope))
    if tag == FILE_COMPLETE:
        return FileCompleteMessage()
    return PlainTextMessage(text)


def _metadata_from(envelope: Dict[str, Any]) -> FileMetadata:
    name = envelope.get("name")
    size = envelope.get("size")
    mime_type = envelope.get("mimeType") or DEFAULT_MIME_TYPE
    if not isinstance(name, str) or not name:
        raise ProtocolViolation("file-metadata without a name")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise ProtocolViolation(f"file-metadata with invalid size {size!r}")
    if not isinstance(mime_type, str):
        raise ProtocolViolation("file-metadata with invalid mimeType")
    return FileMetadata(name=name, size=size, mime_type=mime_type)


class FrameWriter:
    """Send handle valid while :meth:`DataChannelProtocol.exclusive` is held."""

    def __init__(self, protocol: "DataChannelProtocol") -> None:
        self._protocol = protocol

    def send(self, payload: Payload) -> None:
        self._protocol._send_now(payload)

    def send_json(self, message: Dict[str, Any]) -> None:
        self._protocol._send_now(json.dumps(message))


class DataChannelProtocol:
    def __init__(self, channel: RawChannel) -> None:
        self.channel = channel
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return bool(self.channel.connected)

    @property
    def buffered_amount(self) -> int:
        return int(self.channel.buffered_amount or 0)

    async def send_text(self, text: str) -> None:
        async with self._lock:
            self._send_now(text)

    async def send_json(self, message: Dict[str, Any]) -> None:
        async with self._lock:
            self._send_now(json.dumps(message))

    async def send_control(self, action: str, **payload: Any) -> None:
        await self.send_json(ControlMessage(action=action, payload=payload).to_wire())

    async def send_bytes(self, data: bytes) -> None:
        async with self._lock:
            self._send_now(bytes(data))

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[FrameWriter]:
        """Hold the send lock across a multi-frame logical message."""

        async with self._lock:
            yield FrameWriter(self)

    def _send_now(self, payload: Payload) -> None:
        if not self.is_open:
            raise SendFailure("Channel is not open")
        try:
            self.channel.send(payload)
        except SendFailure:
            raise
        except Exception as exc:
            raise SendFailure(f"Channel send failed: {exc}") from exc


__all__ = [
    "BinaryChunk",
    "ControlMessage",
    "DataChannelProtocol",
    "FileCompleteMessage",
    "FileMetadataMessage",
    "FrameWriter",
    "Message",
    "PlainTextMessage",
    "parse_frame",
]
