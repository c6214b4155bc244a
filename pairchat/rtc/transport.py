"""
Transport adapter contract.

Both transports, the manual offer/answer :class:`~pairchat.rtc.direct.DirectTransport`
and the discovery-driven :class:`~pairchat.rtc.matchmaking.MatchmakingTransport`,
expose the same capability set so the supervisor never branches on which one is
active.  Native events are normalised into a :class:`TransportEvents` sink.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Union, runtime_checkable

from ..errors import SendFailure
from ..session import TransportKind

LOG = logging.getLogger(__name__)

Payload = Union[str, bytes]

# Normalised connection states reported through TransportEvents.on_state.
STATE_NEW = "new"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"
TERMINAL_TRANSPORT_STATES = frozenset({STATE_DISCONNECTED, STATE_FAILED, STATE_CLOSED})


@runtime_checkable
class RawChannel(Protocol):
    """
    Bidirectional, in-order message channel.

    The matchmaking peer object satisfies this protocol directly; the direct
    transport wraps its ``RTCDataChannel`` to match it.
    """

    @property
    def connected(self) -> bool: ...

    @property
    def buffered_amount(self) -> int: ...

    def send(self, payload: Payload) -> None: ...

    def destroy(self) -> None: ...


@dataclass(frozen=True)
class TransportCapabilities:
    """
    What the media surface of a transport supports.

    ``replace_tracks`` means per-kind RTP senders whose track can be swapped in
    place; ``stream_media`` means whole streams are added and removed.
    """

    replace_tracks: bool = False
    stream_media: bool = False


class TransportEvents:
    """Receiver for normalised transport notifications; every hook is optional."""

    def on_state(self, state: str) -> None:
        return None

    def on_channel(self, channel: RawChannel) -> None:
        return None

    def on_channel_open(self) -> None:
        return None

    def on_channel_close(self) -> None:
        return None

    def on_message(self, payload: Any) -> None:
        return None

    def on_track(self, track: Any) -> None:
        return None

    def on_error(self, error: BaseException) -> None:
        return None


class TransportAdapter(ABC):
    kind: TransportKind
    capabilities: TransportCapabilities

    def __init__(self, events: TransportEvents) -> None:
        self.events = events
        self._channel: Optional[RawChannel] = None
        self._closed = False

    @property
    def channel(self) -> Optional[RawChannel]:
        return self._channel

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def open(self) -> RawChannel:
        """Return the channel carrying the application protocol."""

    @abstractmethod
    def current_state(self) -> str:
        """Return the normalised connection state."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel and the connection; repeated calls are no-ops."""

    def send(self, payload: Payload) -> None:
        channel = self._channel
        if channel is None or not channel.connected:
            raise SendFailure("Channel is not open")
        channel.send(payload)

    # ------------------------------------------------------------------ media

    async def attach_media(self, tracks: Sequence[Any]) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot attach media")

    async def replace_media(self, track: Any, *, kind: Optional[str] = None) -> bool:
        """
        Swap the outgoing track of ``kind`` (defaults to ``track.kind``).

        Returns ``False`` when no sender of that kind exists.
        """

        return False

    async def detach_media(self, tracks: Sequence[Any]) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot detach media")


def load_object(path: str) -> Any:
    """
    Import ``package.module:attribute`` (or ``package.module.attribute``).
    """

    target = str(path or "").strip()
    if not target:
        raise ValueError("empty import path")
    if ":" in target:
        module_name, _, attribute = target.partition(":")
    else:
        module_name, _, attribute = target.rpartition(".")
    if not module_name or not attribute:
        raise ValueError(f"'{path}' is not a module:attribute path")
    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attribute.split("."):
        obj = getattr(obj, part)
    return obj


__all__ = [
    "Payload",
    "RawChannel",
    "STATE_CLOSED",
    "STATE_CONNECTED",
    "STATE_CONNECTING",
    "STATE_DISCONNECTED",
    "STATE_FAILED",
    "STATE_NEW",
    "TERMINAL_TRANSPORT_STATES",
    "TransportAdapter",
    "TransportCapabilities",
    "TransportEvents",
    "load_object",
]
