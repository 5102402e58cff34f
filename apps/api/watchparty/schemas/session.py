"""Schemas describing the observable state of a watch party."""
from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .messages import ChatMessage, DisplayedReaction, QueueItem, Role, SystemMessage


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    CREATING = "creating"
    JOINING = "joining"
    CONNECTED = "connected"
    ERROR = "error"


class ApiModel(BaseModel):
    """Serialized with camelCase keys, like the data-channel messages."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Participant(ApiModel):
    peer_id: str
    role: Role = Role.GUEST
    joined_at: int = Field(..., description="Epoch milliseconds when the data channel opened")


class StreamInfo(ApiModel):
    track_kinds: list[str] = Field(default_factory=list)
    width: int | None = None
    height: int | None = None
    derived: bool = False
    content_hint: str = ""


class PartySnapshot(ApiModel):
    status: SessionStatus
    role: Role | None = None
    room_code: str | None = None
    peer_id: str | None = None
    local_stream: StreamInfo | None = None
    remote_stream: StreamInfo | None = None
    participants: list[Participant] = Field(default_factory=list)
    messages: list[ChatMessage | SystemMessage] = Field(default_factory=list)
    reactions: list[DisplayedReaction] = Field(default_factory=list)
    queue: list[QueueItem] = Field(default_factory=list)
    error: str | None = None
    can_host: bool = False
