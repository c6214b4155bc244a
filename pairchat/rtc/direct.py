"""
Manual offer/answer transport built on aiortc.

The serialised local description handed to the user is taken only once ICE
gathering reports completion, so it already carries every candidate and no
trickle exchange is needed.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from .. import IceConfig
from ..errors import SignalingError, SignalingParseError
from ..session import TransportKind
from .transport import (
    STATE_CLOSED,
    Payload,
    TransportAdapter,
    TransportCapabilities,
    TransportEvents,
)

LOG = logging.getLogger(__name__)

CHANNEL_LABEL = "chat"
DESCRIPTION_TYPES = ("offer", "answer")

PeerConnectionFactory = Callable[..., Any]


def rtc_configuration(ice: IceConfig) -> RTCConfiguration:
    servers: List[RTCIceServer] = []
    if ice.stun:
        servers.append(RTCIceServer(urls=ice.stun))
    if ice.turn:
        servers.append(
            RTCIceServer(
                urls=ice.turn,
                username=ice.turn_username,
                credential=ice.turn_credential,
            )
        )
    return RTCConfiguration(iceServers=servers)


def parse_description(text: str, expected_type: Optional[str] = None) -> RTCSessionDescription:
    """
    Validate pasted signaling text and turn it into a session description.
    """

    raw = str(text or "").strip()
    if not raw:
        raise SignalingParseError("Session description is empty")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise SignalingParseError(f"Session description is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SignalingParseError("Session description must be a JSON object")

    desc_type = payload.get("type")
    sdp = payload.get("sdp")
    if desc_type not in DESCRIPTION_TYPES:
        raise SignalingParseError(f"Unsupported description type {desc_type!r}")
    if expected_type is not None and desc_type != expected_type:
        raise SignalingParseError(f"Expected an {expected_type}, got an {desc_type}")
    if not isinstance(sdp, str) or not sdp.strip():
        raise SignalingParseError("Session description has no sdp")
    return RTCSessionDescription(sdp=sdp, type=desc_type)


def serialize_description(description: Any) -> str:
    if description is None:
        raise SignalingError("No local description available")
    return json.dumps({"type": description.type, "sdp": description.sdp})


class DirectChannel:
    """Adapt an ``RTCDataChannel`` to the raw channel protocol."""

    def __init__(self, channel: Any) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return str(getattr(self._channel, "label", CHANNEL_LABEL))

    @property
    def connected(self) -> bool:
        return self._channel.readyState == "open"

    @property
    def buffered_amount(self) -> int:
        return int(self._channel.bufferedAmount or 0)

    def send(self, payload: Payload) -> None:
        self._channel.send(payload)

    def destroy(self) -> None:
        if self._channel.readyState in ("closing", "closed"):
            return
        self._channel.close()


class DirectTransport(TransportAdapter):
    """
    Wraps one ``RTCPeerConnection`` plus the ``chat`` data channel.
    """

    kind = TransportKind.DIRECT
    capabilities = TransportCapabilities(replace_tracks=True, stream_media=False)

    def __init__(
        self,
        events: TransportEvents,
        ice: Optional[IceConfig] = None,
        *,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
    ) -> None:
        super().__init__(events)
        factory = peer_connection_factory or RTCPeerConnection
        self._pc = factory(configuration=rtc_configuration(ice or IceConfig()))
        self._gathering_complete = asyncio.Event()
        # Senders survive replaceTrack(None); remember them per kind to re-enable.
        self._senders: Dict[str, Any] = {}
        self._pc.on("icegatheringstatechange", self._on_ice_gathering_state)
        self._pc.on("connectionstatechange", self._on_connection_state)
        self._pc.on("datachannel", self._on_datachannel)
        self._pc.on("track", self._on_track)

    @property
    def peer_connection(self) -> Any:
        return self._pc

    # --------------------------------------------------------------- signaling

    def open(self) -> DirectChannel:
        if self._channel is not None:
            return self._channel  # type: ignore[return-value]
        channel = self._pc.createDataChannel(CHANNEL_LABEL)
        return self._bind_channel(channel)

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        await self._wait_for_gathering()
        return serialize_description(self._pc.localDescription)

    async def create_answer(self) -> str:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        await self._wait_for_gathering()
        return serialize_description(self._pc.localDescription)

    async def apply_remote(self, description: RTCSessionDescription) -> None:
        await self._pc.setRemoteDescription(description)

    def current_state(self) -> str:
        if self._closed:
            return STATE_CLOSED
        return str(self._pc.connectionState)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        channel = self._channel
        if channel is not None:
            channel.destroy()
        await self._pc.close()

    # ------------------------------------------------------------------ media

    def _sender_for(self, kind: str) -> Any:
        for sender in self._pc.getSenders():
            track = sender.track
            if track is not None and track.kind == kind:
                return sender
        return self._senders.get(kind)

    async def attach_media(self, tracks: Sequence[Any]) -> None:
        for track in tracks:
            self._senders[track.kind] = self._pc.addTrack(track)

    async def replace_media(self, track: Any, *, kind: Optional[str] = None) -> bool:
        target_kind = kind or getattr(track, "kind", None)
        if not target_kind:
            return False
        sender = self._sender_for(target_kind)
        if sender is None:
            return False
        result = sender.replaceTrack(track)
        if inspect.isawaitable(result):
            await result
        return True

    async def detach_media(self, tracks: Sequence[Any]) -> None:
        wanted = {id(track) for track in tracks}
        for sender in self._pc.getSenders():
            if sender.track is None or id(sender.track) not in wanted:
                continue
            result = sender.replaceTrack(None)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------ events

    async def _wait_for_gathering(self) -> None:
        if self._pc.iceGatheringState == "complete":
            return
        await self._gathering_complete.wait()

    def _bind_channel(self, channel: Any) -> DirectChannel:
        wrapped = DirectChannel(channel)
        self._channel = wrapped
        channel.on("open", self.events.on_channel_open)
        channel.on("close", self.events.on_channel_close)
        channel.on("message", self.events.on_message)
        self.events.on_channel(wrapped)
        if channel.readyState == "open":
            self.events.on_channel_open()
        return wrapped

    def _on_ice_gathering_state(self) -> None:
        state = self._pc.iceGatheringState
        LOG.debug("ICE gathering state: %s", state)
        if state == "complete":
            self._gathering_complete.set()

    def _on_connection_state(self) -> None:
        state = str(self._pc.connectionState)
        LOG.info("Connection state: %s", state)
        self.events.on_state(state)

    def _on_datachannel(self, channel: Any) -> None:
        if self._channel is not None:
            LOG.warning("Ignoring extra data channel %r", getattr(channel, "label", None))
            return
        self._bind_channel(channel)

    def _on_track(self, track: Any) -> None:
        LOG.info("Remote %s track received", getattr(track, "kind", "unknown"))
        self.events.on_track(track)


__all__ = [
    "CHANNEL_LABEL",
    "DirectChannel",
    "DirectTransport",
    "parse_description",
    "rtc_configuration",
    "serialize_description",
]
