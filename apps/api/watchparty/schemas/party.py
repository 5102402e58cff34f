"""Data contracts for the party control endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field

from .messages import ChatMessage, QueueCandidate, QueueItem, ReactionMessage


class JoinRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Room code as typed by the user; case is ignored")


class ChatRequest(BaseModel):
    text: str = Field(..., max_length=2000)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=16)


class VoteRequest(BaseModel):
    vote: int = Field(..., description="+1 or -1")


class QueueAddRequest(QueueCandidate):
    """Same shape as a search result."""


class ChatResponse(BaseModel):
    message: ChatMessage | None = None


class ReactionResponse(BaseModel):
    reaction: ReactionMessage | None = None


class QueueAddResponse(BaseModel):
    item: QueueItem | None = Field(default=None, description="Null when the title was already queued")


class QueueChangeResponse(BaseModel):
    applied: bool


class SearchResponse(BaseModel):
    results: list[QueueCandidate] = Field(default_factory=list)
