"""Ephemeral chat log and on-screen reactions."""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict

import nh3

from ..schemas.messages import ChatMessage, DisplayedReaction, ReactionMessage, SystemMessage

ChatEntry = ChatMessage | SystemMessage


def sanitize_chat_text(text: str) -> str:
    """Strip scripts and unsafe markup; browser peers render chat text as HTML."""

    return nh3.clean(text.strip()).strip()


class ChatLog:
    """Messages seen since joining; never replayed to late joiners."""

    def __init__(self) -> None:
        self._messages: list[ChatEntry] = []
        self._ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[ChatEntry]:
        return list(self._messages)

    def add(self, message: ChatEntry) -> bool:
        if message.id in self._ids:
            return False
        self._ids.add(message.id)
        self._messages.append(message)
        return True

    def clear(self) -> None:
        self._messages = []
        self._ids = set()


@dataclass
class _ReactionEntry:
    reaction: DisplayedReaction
    expires_at: float
    timer: asyncio.TimerHandle | None


class ReactionBoard:
    """Reactions currently on screen.

    The receiver owns expiry: each reaction is dropped ``ttl`` seconds after it
    arrives, no retraction is ever sent.
    """

    def __init__(
        self,
        ttl: float = 3.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        on_expire: Callable[[DisplayedReaction], None] | None = None,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_expire = on_expire
        self._entries: Dict[str, _ReactionEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, reaction: ReactionMessage) -> DisplayedReaction | None:
        if reaction.id in self._entries:
            return None
        displayed = DisplayedReaction(**reaction.model_dump(exclude={"type"}), x=10 + self._rng.random() * 80)
        timer = None
        try:
            timer = asyncio.get_running_loop().call_later(self.ttl, self._expire, reaction.id)
        except RuntimeError:
            # No loop (synchronous callers); ``active`` still prunes by clock.
            timer = None
        self._entries[reaction.id] = _ReactionEntry(displayed, self._clock() + self.ttl, timer)
        return displayed

    def active(self) -> list[DisplayedReaction]:
        now = self._clock()
        for reaction_id in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            self._drop(reaction_id)
        return [entry.reaction for entry in self._entries.values()]

    def clear(self) -> None:
        for entry in self._entries.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._entries = {}

    def _expire(self, reaction_id: str) -> None:
        entry = self._entries.pop(reaction_id, None)
        if entry is not None and self._on_expire is not None:
            self._on_expire(entry.reaction)

    def _drop(self, reaction_id: str) -> None:
        entry = self._entries.pop(reaction_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
