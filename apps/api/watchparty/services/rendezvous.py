"""Peer identity abstraction used by the party session.

A :class:`PeerIdentity` registers a public peer id with a rendezvous service
and hands out :class:`DataConnection` and :class:`MediaCall` objects. All
three are event emitters in the same style as aiortc objects:

``PeerIdentity``
    ``connection`` (DataConnection), ``call`` (MediaCall), ``error``
    (PeerError), ``disconnected``
``DataConnection``
    ``open``, ``data`` (decoded JSON payload), ``close``, ``error``
``MediaCall``
    ``stream`` (RemoteStream), ``close``
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from aiortc import MediaStreamTrack
from pyee.asyncio import AsyncIOEventEmitter


class PeerErrorKind(str, enum.Enum):
    UNAVAILABLE_ID = "unavailable-id"
    PEER_UNAVAILABLE = "peer-unavailable"
    NETWORK = "network"
    SERVER_ERROR = "server-error"
    OTHER = "other"


class PeerError(RuntimeError):
    """Identity-level failure reported by the rendezvous client."""

    def __init__(self, kind: PeerErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.detail = message


@dataclass(slots=True)
class RemoteStream:
    """Tracks received from one media call."""

    peer: str
    tracks: list[MediaStreamTrack] = field(default_factory=list)

    @property
    def video_track(self) -> MediaStreamTrack | None:
        return next((track for track in self.tracks if track.kind == "video"), None)

    @property
    def audio_tracks(self) -> list[MediaStreamTrack]:
        return [track for track in self.tracks if track.kind == "audio"]


class DataConnection(AsyncIOEventEmitter, ABC):
    """Reliable ordered message channel to one remote peer."""

    def __init__(self, peer: str, connection_id: str, *, label: str = "party") -> None:
        super().__init__()
        self.peer = peer
        self.connection_id = connection_id
        self.label = label
        self.open = False

    @abstractmethod
    def send(self, message: dict[str, Any]) -> None:
        """Queue one JSON message; raises ``ConnectionError`` when the channel is not open."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel; calling it again is a no-op."""


class MediaCall(AsyncIOEventEmitter, ABC):
    """Audio/video transport between the host and one guest."""

    def __init__(self, peer: str, connection_id: str) -> None:
        super().__init__()
        self.peer = peer
        self.connection_id = connection_id

    @property
    @abstractmethod
    def peer_connection(self) -> Any:
        """The underlying ``RTCPeerConnection`` (used for sender tuning)."""

    @abstractmethod
    async def answer(self, tracks: Sequence[MediaStreamTrack] = ()) -> None:
        """Accept an inbound call, optionally sending tracks back."""

    @abstractmethod
    async def close(self) -> None:
        """Hang up; calling it again is a no-op."""


class PeerIdentity(AsyncIOEventEmitter, ABC):
    """A registered peer id on the rendezvous service."""

    def __init__(self, peer_id: str) -> None:
        super().__init__()
        self.peer_id = peer_id

    @abstractmethod
    async def open(self) -> None:
        """Register with the rendezvous service; raises :class:`PeerError`."""

    @abstractmethod
    async def connect(self, peer: str, *, label: str = "party") -> DataConnection:
        """Start a data connection; progress is reported through its events."""

    @abstractmethod
    async def call(self, peer: str, tracks: Sequence[MediaStreamTrack]) -> MediaCall | None:
        """Start a media call carrying ``tracks``."""

    @abstractmethod
    async def reconnect(self) -> None:
        """Re-register the same id after losing the rendezvous connection."""

    @abstractmethod
    async def destroy(self) -> None:
        """Close every connection and unregister; calling it again is a no-op."""


IdentityFactory = Callable[[str | None], PeerIdentity]
