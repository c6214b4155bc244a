"""
Pydantic schemas mirroring the REST contract.
"""

from __future__ import annotations

import json
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator

from .. import MODES
from ..utils.pools import split_pools


class DescriptionRequest(BaseModel):
    """A pasted offer or answer; its shape is validated by the supervisor."""

    description: str = Field(
        default="",
        validation_alias=AliasChoices("description", "offer", "answer", "sdp"),
    )
    model_config = ConfigDict(populate_by_name=True)

    @validator("description", pre=True)
    def _coerce_description(cls, value: object) -> str:
        if value is None:
            return ""
        if isinstance(value, dict):
            return json.dumps(value)
        return str(value)


class DescriptionResponse(BaseModel):
    description: str


class MessageRequest(BaseModel):
    text: str

    @validator("text", pre=True)
    def _normalise_text(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("text is required")
        return result


class ModeRequest(BaseModel):
    mode: str

    @validator("mode", pre=True)
    def _normalise_mode(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")
        return result


class PoolsRequest(BaseModel):
    pools: List[str] = Field(default_factory=list)

    @validator("pools", pre=True)
    def _split(cls, value: object) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return split_pools(value)
        return [str(item).strip() for item in value if str(item).strip()]


class PoolsResponse(BaseModel):
    pools: List[str]
    raw: str = ""


class FileModel(BaseModel):
    id: str
    name: str
    mimeType: str
    size: int
    receivedAt: float


class FileSentModel(BaseModel):
    name: str
    size: int
    mimeType: str


class ToggleResponse(BaseModel):
    muted: Optional[bool] = None
    cameraOff: Optional[bool] = None
    sharing: Optional[bool] = None
