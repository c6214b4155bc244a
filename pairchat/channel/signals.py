"""
Call-control signalling between the two peers.

Inbound control frames only become informational events: the remote side's
mute or camera state never changes local media.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .protocol import ControlMessage, DataChannelProtocol

LOG = logging.getLogger(__name__)


class CallAction(str, Enum):
    VOICE_CALL_START = "voice-call-start"
    VIDEO_CALL_START = "video-call-start"
    CALL_END = "call-end"
    MUTE_TOGGLE = "mute-toggle"
    CAMERA_TOGGLE = "camera-toggle"
    SCREEN_SHARE_TOGGLE = "screen-share-toggle"


# Boolean payload field carried by each toggle action.
TOGGLE_FIELDS: Dict[CallAction, str] = {
    CallAction.MUTE_TOGGLE: "muted",
    CallAction.CAMERA_TOGGLE: "cameraOff",
    CallAction.SCREEN_SHARE_TOGGLE: "sharing",
}


@dataclass(frozen=True)
class CallEvent:
    action: CallAction
    payload: Dict[str, Any] = field(default_factory=dict)
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.payload)
        data["action"] = self.action.value
        data["text"] = self.text
        return data


def describe(action: CallAction, payload: Dict[str, Any]) -> str:
    if action is CallAction.VOICE_CALL_START:
        return "Stranger started a voice call"
    if action is CallAction.VIDEO_CALL_START:
        return "Stranger started a video call"
    if action is CallAction.CALL_END:
        return "Stranger ended the call"
    if action is CallAction.MUTE_TOGGLE:
        state = "muted" if payload.get("muted") else "unmuted"
        return f"Stranger {state} their microphone"
    if action is CallAction.CAMERA_TOGGLE:
        state = "off" if payload.get("cameraOff") else "on"
        return f"Stranger turned {state} their camera"
    state = "started" if payload.get("sharing") else "stopped"
    return f"Stranger {state} screen sharing"


class CallSignalingRouter:
    def __init__(self, protocol: DataChannelProtocol) -> None:
        self.protocol = protocol

    def route(self, message: ControlMessage) -> Optional[CallEvent]:
        try:
            action = CallAction(message.action)
        except ValueError:
            LOG.info("Ignoring unknown control action %r", message.action)
            return None

        payload: Dict[str, Any] = {}
        flag = TOGGLE_FIELDS.get(action)
        if flag is not None:
            payload[flag] = bool(message.payload.get(flag))
        return CallEvent(action=action, payload=payload, text=describe(action, payload))

    async def notify(self, action: CallAction, **payload: Any) -> None:
        """Tell the peer about a local call-state change."""

        await self.protocol.send_control(CallAction(action).value, **payload)


__all__ = ["CallAction", "CallEvent", "CallSignalingRouter", "TOGGLE_FIELDS", "describe"]
