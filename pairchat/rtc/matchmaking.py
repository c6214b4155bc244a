"""
Matchmaking ("pool") transport.

The discovery client and the peer abstraction are external libraries.  They
are located once at startup from configured ``module:attr`` paths; when either
is missing the factory reports :class:`Unavailable` instead of raising, and the
manual transport remains the only option.

Collaborator contract
---------------------
``client_factory(swarm_id=..., peer_id=..., announce=[...], peer_factory=...)``
returns a client exposing ``on(event, handler)``, ``start()`` and
``destroy()``; it emits ``peer`` (a new candidate), ``error`` and ``warning``.
A peer exposes ``on(event, handler)``, ``send(payload)``, ``destroy()``,
``connected``, ``buffered_amount`` and optionally ``add_stream(tracks)`` /
``remove_stream(tracks)``; it emits ``connect``, ``data``, ``close``, ``error``
and ``stream``.  Text frames arrive as ``str`` and binary frames as ``bytes``.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Union

from .. import MatchmakingConfig
from ..errors import InvalidState
from ..session import TransportKind
from .transport import (
    STATE_CLOSED,
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_NEW,
    RawChannel,
    TransportAdapter,
    TransportCapabilities,
    TransportEvents,
    load_object,
)

LOG = logging.getLogger(__name__)

_PEER_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class MatchmakingFactory:
    client: Callable[..., Any]
    peer: Callable[..., Any]


@dataclass(frozen=True)
class Available:
    factory: MatchmakingFactory


@dataclass(frozen=True)
class Unavailable:
    reason: str


TransportAvailability = Union[Available, Unavailable]


def resolve_matchmaking(config: MatchmakingConfig) -> TransportAvailability:
    """
    Locate the discovery client and peer implementations.

    Called once when the supervisor is built; the result is never re-probed.
    """

    if not config.client or not config.peer:
        return Unavailable("matchmaking.client and matchmaking.peer are not configured")

    try:
        client = load_object(config.client)
        peer = load_object(config.peer)
    except (ImportError, AttributeError, ValueError) as exc:
        LOG.warning("Matchmaking libraries could not be loaded: %s", exc)
        return Unavailable(f"matchmaking libraries could not be loaded: {exc}")

    if not callable(client) or not callable(peer):
        return Unavailable("matchmaking.client and matchmaking.peer must be callables")
    return Available(MatchmakingFactory(client=client, peer=peer))


def generate_peer_id() -> str:
    return "p-" + "".join(secrets.choice(_PEER_ID_ALPHABET) for _ in range(9))


class MatchmakingTransport(TransportAdapter):
    """
    Binds the first peer the discovery client offers.

    The matched peer is both the connection and the channel: :meth:`open`
    returns it unchanged.
    """

    kind = TransportKind.MATCHMAKING
    capabilities = TransportCapabilities(replace_tracks=False, stream_media=True)

    def __init__(
        self,
        events: TransportEvents,
        factory: MatchmakingFactory,
        *,
        announce: Sequence[str],
        swarm_id: str,
        peer_id: Optional[str] = None,
    ) -> None:
        super().__init__(events)
        self._factory = factory
        self.announce: List[str] = list(announce)
        self.swarm_id = swarm_id
        self.peer_id = peer_id or generate_peer_id()
        self._client: Any = None
        self._peer: Any = None
        self._state = STATE_NEW
        self.logger = LOG.getChild(self.peer_id)

    @property
    def peer(self) -> Any:
        return self._peer

    def start(self) -> None:
        if self._client is not None:
            return
        client = self._factory.client(
            swarm_id=self.swarm_id,
            peer_id=self.peer_id,
            announce=list(self.announce),
            peer_factory=self._factory.peer,
        )
        self._client = client
        client.on("peer", self._on_peer)
        client.on("error", self._on_client_error)
        client.on("warning", self._on_client_warning)
        client.start()
        self.logger.info("Joined swarm %s via %d endpoint(s)", self.swarm_id, len(self.announce))

    def open(self) -> RawChannel:
        if self._peer is None:
            raise InvalidState("No peer has been matched yet")
        return self._peer

    def current_state(self) -> str:
        return self._state

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._state = STATE_CLOSED
        peer, self._peer = self._peer, None
        client, self._client = self._client, None
        if peer is not None and not getattr(peer, "destroyed", False):
            peer.destroy()
        if client is not None:
            client.destroy()

    # ------------------------------------------------------------------ media

    async def attach_media(self, tracks: Sequence[Any]) -> None:
        peer = self._require_peer()
        peer.add_stream(list(tracks))

    async def detach_media(self, tracks: Sequence[Any]) -> None:
        peer = self._require_peer()
        peer.remove_stream(list(tracks))

    def _require_peer(self) -> Any:
        if self._peer is None:
            raise InvalidState("No peer has been matched yet")
        return self._peer

    # ------------------------------------------------------------------ events

    def _on_peer(self, peer: Any) -> None:
        if self._closed:
            return
        if self._peer is not None:
            self.logger.debug("Ignoring additional matched peer; one is already bound")
            return
        self.logger.info("Pool matched with peer")
        self._peer = peer
        self._channel = peer
        peer.on("connect", self._on_connect)
        peer.on("data", self.events.on_message)
        peer.on("stream", self._on_stream)
        peer.on("error", self.events.on_error)
        peer.on("close", self._on_close)
        self._state = STATE_CONNECTING
        self.events.on_channel(peer)
        self.events.on_state(STATE_CONNECTING)

    def _on_connect(self) -> None:
        self._state = STATE_CONNECTED
        self.events.on_state(STATE_CONNECTED)
        self.events.on_channel_open()

    def _on_stream(self, stream: Any) -> None:
        tracks = stream if isinstance(stream, (list, tuple)) else getattr(stream, "tracks", [stream])
        for track in tracks:
            self.events.on_track(track)

    def _on_close(self) -> None:
        if self._closed:
            return
        self._state = STATE_CLOSED
        self.events.on_channel_close()
        self.events.on_state(STATE_CLOSED)

    def _on_client_error(self, error: Any) -> None:
        exc = error if isinstance(error, BaseException) else RuntimeError(str(error))
        self.logger.warning("Pool error: %s", exc)
        self.events.on_error(exc)

    def _on_client_warning(self, warning: Any) -> None:
        self.logger.warning("Pool warning: %s", warning)


__all__ = [
    "Available",
    "MatchmakingFactory",
    "MatchmakingTransport",
    "TransportAvailability",
    "Unavailable",
    "generate_peer_id",
    "resolve_matchmaking",
]
