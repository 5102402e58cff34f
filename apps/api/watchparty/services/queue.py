"""Replicated watch queue with per-peer votes."""
from __future__ import annotations

from typing import Iterable, Literal

from ..schemas.messages import QueueItem

Vote = Literal[-1, 1]


class WatchQueue:
    """Insertion-ordered queue items, unique per ``(tmdb_id, media_type)``.

    Votes live in a per-item map keyed by peer id, so re-sending a vote
    overwrites it and replays are harmless.
    """

    def __init__(self) -> None:
        self._items: list[QueueItem] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    def get(self, item_id: str) -> QueueItem | None:
        return next((item for item in self._items if item.id == item_id), None)

    def contains(self, tmdb_id: int, media_type: str) -> bool:
        return any(item.key == (tmdb_id, media_type) for item in self._items)

    def add(self, item: QueueItem) -> bool:
        """Append ``item`` unless its id or title key is already queued."""

        if self.get(item.id) is not None or self.contains(*item.key):
            return False
        self._items.append(item)
        return True

    def vote(self, item_id: str, peer_id: str, vote: Vote) -> bool:
        if vote not in (-1, 1):
            raise ValueError(f"vote must be -1 or 1, got {vote!r}")
        for index, item in enumerate(self._items):
            if item.id != item_id:
                continue
            if item.votes.get(peer_id) == vote:
                return True
            self._items[index] = item.model_copy(update={"votes": {**item.votes, peer_id: vote}})
            return True
        return False

    def remove(self, item_id: str) -> bool:
        remaining = [item for item in self._items if item.id != item_id]
        removed = len(remaining) != len(self._items)
        self._items = remaining
        return removed

    def replace(self, items: Iterable[QueueItem]) -> None:
        """Adopt the host's queue wholesale, dropping duplicate keys."""

        self._items = []
        for item in items:
            self.add(item)

    def clear(self) -> None:
        self._items = []

    def ranked(self) -> list[QueueItem]:
        """Items by total score, highest first; ties keep insertion order."""

        return sorted(self._items, key=lambda item: item.score, reverse=True)
