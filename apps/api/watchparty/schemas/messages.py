"""Wire contracts for messages exchanged over party data channels.

Field names travel as camelCase JSON so that browser peers and Python peers
share one format. Every model is frozen; state changes build new instances.
"""
from __future__ import annotations

import enum
import secrets
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


def make_id(prefix: str) -> str:
    """Return a unique id such as ``msg-1718000000000-3f9a61c2``."""

    return f"{prefix}-{now_ms()}-{secrets.token_hex(4)}"


class Role(str, enum.Enum):
    HOST = "host"
    GUEST = "guest"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class QueueCandidate(WireModel):
    """Something a participant may propose for the queue, usually a search hit."""

    id: str | None = None
    tmdb_id: int
    media_type: str = Field(default="movie")
    title: str
    poster: str | None = None
    year: str = Field(default="")


class QueueItem(WireModel):
    id: str
    tmdb_id: int
    media_type: str = Field(default="movie")
    title: str
    poster: str | None = None
    year: str = Field(default="")
    added_by: str
    votes: dict[str, Literal[-1, 1]] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)

    @property
    def key(self) -> tuple[int, str]:
        return (self.tmdb_id, self.media_type)

    @property
    def score(self) -> int:
        return sum(self.votes.values())


class ChatMessage(WireModel):
    type: Literal["chat"] = "chat"
    id: str = Field(default_factory=lambda: make_id("msg"))
    timestamp: int = Field(default_factory=now_ms)
    sender: str
    sender_role: Role
    text: str


class SystemMessage(WireModel):
    type: Literal["system"] = "system"
    id: str = Field(default_factory=lambda: make_id("sys"))
    timestamp: int = Field(default_factory=now_ms)
    text: str


class ReactionMessage(WireModel):
    type: Literal["reaction"] = "reaction"
    id: str = Field(default_factory=lambda: make_id("rxn"))
    timestamp: int = Field(default_factory=now_ms)
    emoji: str
    sender: str


class DisplayedReaction(ReactionMessage):
    """A received reaction plus the horizontal offset (percent) it is drawn at."""

    x: float = Field(..., ge=0, le=100)


class QueueAddMessage(WireModel):
    type: Literal["queue-add"] = "queue-add"
    id: str = Field(default_factory=lambda: make_id("qadd"))
    timestamp: int = Field(default_factory=now_ms)
    item: QueueItem


class QueueVoteMessage(WireModel):
    type: Literal["queue-vote"] = "queue-vote"
    id: str = Field(default_factory=lambda: make_id("vote"))
    timestamp: int = Field(default_factory=now_ms)
    item_id: str
    vote: Literal[-1, 1]
    voter: str = Field(default="")
    voter_peer_id: str


class QueueRemoveMessage(WireModel):
    type: Literal["queue-remove"] = "queue-remove"
    id: str = Field(default_factory=lambda: make_id("qrm"))
    timestamp: int = Field(default_factory=now_ms)
    item_id: str


class QueueSyncMessage(WireModel):
    type: Literal["queue-sync"] = "queue-sync"
    id: str = Field(default_factory=lambda: make_id("qsync"))
    timestamp: int = Field(default_factory=now_ms)
    queue: list[QueueItem] = Field(default_factory=list)


PartyMessage = Annotated[
    Union[
        ChatMessage,
        SystemMessage,
        ReactionMessage,
        QueueAddMessage,
        QueueVoteMessage,
        QueueRemoveMessage,
        QueueSyncMessage,
    ],
    Field(discriminator="type"),
]

# Types a host applies and then fans out to every other guest.
RELAYABLE_TYPES = frozenset({"chat", "reaction", "queue-add", "queue-vote", "queue-remove"})
# Types only the host may author.
HOST_ONLY_TYPES = frozenset({"system", "queue-sync"})

_message_adapter: TypeAdapter[PartyMessage] = TypeAdapter(PartyMessage)


def parse_message(payload: object) -> PartyMessage:
    """Validate a decoded data-channel payload; raises ``pydantic.ValidationError``."""

    return _message_adapter.validate_python(payload)
