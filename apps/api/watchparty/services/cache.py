"""Small in-memory response cache with TTL eviction."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class _CacheEntry:
    value: Any
    stored_at: float


class TTLCache:
    """Key/value cache whose entries expire ``ttl_seconds`` after being stored."""

    def __init__(self, ttl_seconds: float = 600, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        self._evict_expired()
        entry = self._entries.get(key)
        if not entry:
            return None
        return entry.value

    def set(self, key: str, value: Any) -> None:
        self._evict_expired()
        if self._ttl <= 0:
            return
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at >= self._ttl]
        for key in expired:
            self._entries.pop(key, None)
