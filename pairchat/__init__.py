"""
pairchat peer session package.

Pairs two peers into a direct session and carries text, call-control signals
and files over a WebRTC data channel.  The session is driven either by a
manual offer/answer exchange or by a matchmaking collaborator, and is exposed
to user interfaces through a small FastAPI control surface.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

__all__ = [
    "CaptureConfig",
    "IceConfig",
    "MatchmakingConfig",
    "MediaConfig",
    "PairchatConfig",
    "TimeoutConfig",
    "TransferConfig",
]

ENV_HOME_VAR = "PAIRCHAT_HOME"
DEFAULT_STUN = "stun:stun.stunprotocol.org:3478"
DEFAULT_SWARM_ID = "strangerchatroom00000001"
MODES = ("manual", "pool")


def _default_data_dir() -> Path:
    env_home = os.environ.get(ENV_HOME_VAR)
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".pairchat"


@dataclass
class IceConfig:
    stun: str = DEFAULT_STUN
    turn: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None


@dataclass
class CaptureConfig:
    """ffmpeg device/format pair handed to ``MediaPlayer``."""

    device: Optional[str] = None
    format: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class MediaConfig:
    """Startup capture is opt in; a kind without a configured device is denied."""

    audio: bool = False
    video: bool = False
    microphone: CaptureConfig = field(default_factory=CaptureConfig)
    camera: CaptureConfig = field(default_factory=CaptureConfig)
    screen: CaptureConfig = field(default_factory=CaptureConfig)


@dataclass
class TransferConfig:
    chunk_size: int = 16_384
    buffer_threshold: int = 65_536
    poll_interval: float = 0.05


@dataclass
class TimeoutConfig:
    """Upper bounds in seconds; ``0`` disables the bound."""

    remote_description: float = 30.0
    match: float = 0.0


@dataclass
class MatchmakingConfig:
    client: Optional[str] = None
    peer: Optional[str] = None
    swarm_id: str = DEFAULT_SWARM_ID


@dataclass
class PairchatConfig:
    """
    Top level configuration.

    Every section has a usable default so a bare ``PairchatConfig()`` runs the
    manual mode without opening any capture device.
    """

    mode: str = "manual"
    data_dir: Path = field(default_factory=_default_data_dir)
    ice: IceConfig = field(default_factory=IceConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    matchmaking: MatchmakingConfig = field(default_factory=MatchmakingConfig)

    def __post_init__(self) -> None:
        mode = str(self.mode or "manual").strip().lower()
        if mode not in MODES:
            raise ValueError(f"Unsupported mode '{self.mode}' (expected one of {', '.join(MODES)})")
        self.mode = mode
        self.data_dir = Path(self.data_dir).expanduser()

    @property
    def pools_path(self) -> Path:
        return self.data_dir / "pools.txt"

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "PairchatConfig":
        return _build(cls, payload or {})

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PairchatConfig":
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError(f"Configuration root in {path} must be a mapping")
        return cls.from_dict(payload)


def _build(kind: type, payload: Dict[str, Any]) -> Any:
    kwargs: Dict[str, Any] = {}
    known = {item.name: item for item in fields(kind)}
    for key, value in payload.items():
        name = str(key).replace("-", "_")
        declared = known.get(name)
        if declared is None:
            raise ValueError(f"Unknown configuration key '{key}' for {kind.__name__}")
        default = declared.default_factory() if callable(declared.default_factory) else None  # type: ignore[misc]
        if is_dataclass(default) and isinstance(value, dict):
            kwargs[name] = _build(type(default), value)
        else:
            kwargs[name] = value
    return kind(**kwargs)
