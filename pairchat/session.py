"""
Session data model.

A :class:`Session` is the single active peer engagement.  It is created and
mutated only by :class:`pairchat.supervisor.ConnectionSupervisor`; every other
component receives it by reference and reads from it.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    MATCHING = "matching"
    AWAITING_REMOTE = "awaiting-remote"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


# Offering and Matching share a rank: matchmaking collapses the manual
# Offering/AwaitingRemote steps into a single Matching step.
_STATE_RANK: Dict[SessionState, int] = {
    SessionState.IDLE: 0,
    SessionState.OFFERING: 1,
    SessionState.MATCHING: 1,
    SessionState.AWAITING_REMOTE: 2,
    SessionState.CONNECTING: 3,
    SessionState.CONNECTED: 4,
    SessionState.DISCONNECTED: 5,
    SessionState.CLOSED: 5,
}

TERMINAL_STATES = frozenset({SessionState.DISCONNECTED, SessionState.CLOSED})


class TransportKind(str, Enum):
    DIRECT = "direct"
    MATCHMAKING = "matchmaking"


class SessionRole(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"
    MATCHED = "matched"


class TransferDirection(str, Enum):
    SENDING = "sending"
    NONE = "none"
    RECEIVING = "receiving"


@dataclass(frozen=True)
class FileMetadata:
    name: str
    size: int
    mime_type: str = "application/octet-stream"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": "file-metadata",
            "name": self.name,
            "size": int(self.size),
            "mimeType": self.mime_type,
        }


@dataclass
class FileTransferState:
    """
    Progress of the one transfer a session may run at a time.

    ``chunks`` is append-only and joined only at completion; arrival order is
    the file order because the channel delivers in order.
    """

    direction: TransferDirection = TransferDirection.NONE
    metadata: Optional[FileMetadata] = None
    received_bytes: int = 0
    sent_bytes: int = 0
    chunks: List[bytes] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.direction is not TransferDirection.NONE

    def reset(self) -> None:
        self.direction = TransferDirection.NONE
        self.metadata = None
        self.received_bytes = 0
        self.sent_bytes = 0
        self.chunks = []

    def to_dict(self) -> dict:
        metadata = self.metadata
        return {
            "direction": self.direction.value,
            "name": metadata.name if metadata else None,
            "size": metadata.size if metadata else None,
            "mimeType": metadata.mime_type if metadata else None,
            "receivedBytes": int(self.received_bytes),
            "sentBytes": int(self.sent_bytes),
        }


@dataclass
class ReceivedFile:
    """A completed transfer, available for download."""

    name: str
    mime_type: str
    data: bytes
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    received_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "size": self.size,
            "receivedAt": self.received_at,
        }


@dataclass(frozen=True)
class SessionEvent:
    """Notification pushed from the supervisor to UI observers."""

    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"type": self.kind, "payload": dict(self.payload), "ts": self.ts}


@dataclass
class Session:
    transport_kind: Optional[TransportKind] = None
    role: Optional[SessionRole] = None
    state: SessionState = SessionState.IDLE
    transport: Any = None
    channel: Any = None
    local_media: List[Any] = field(default_factory=list)
    remote_media: List[Any] = field(default_factory=list)
    screen_media: List[Any] = field(default_factory=list)
    camera_track: Any = None
    muted: bool = False
    camera_off: bool = False
    in_call: bool = False
    channel_open: bool = False
    file_transfer: FileTransferState = field(default_factory=FileTransferState)
    local_description: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def can_advance(self, target: SessionState) -> bool:
        return _STATE_RANK[target] > _STATE_RANK[self.state]

    def advance(self, target: SessionState) -> bool:
        """
        Move forward to ``target``; returns ``False`` (and leaves the state
        alone) for backward or same-rank moves.
        """

        if not self.can_advance(target):
            return False
        self.state = target
        return True

    @property
    def is_active(self) -> bool:
        return self.state is not SessionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "transportKind": self.transport_kind.value if self.transport_kind else None,
            "role": self.role.value if self.role else None,
            "channelOpen": bool(self.channel_open),
            "localTracks": [getattr(track, "kind", None) for track in self.local_media],
            "remoteTracks": [getattr(track, "kind", None) for track in self.remote_media],
            "screenSharing": bool(self.screen_media),
            "muted": bool(self.muted),
            "cameraOff": bool(self.camera_off),
            "inCall": bool(self.in_call),
            "fileTransfer": self.file_transfer.to_dict(),
            "localDescription": self.local_description,
            "createdAt": self.created_at,
        }


__all__ = [
    "FileMetadata",
    "FileTransferState",
    "ReceivedFile",
    "Session",
    "SessionEvent",
    "SessionRole",
    "SessionState",
    "TERMINAL_STATES",
    "TransferDirection",
    "TransportKind",
]
