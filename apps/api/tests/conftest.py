"""In-memory rendezvous network and media fakes shared by the party tests."""
from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Sequence

import av
import pytest
from aiortc import MediaStreamTrack

from watchparty.services.media import CaptureStream, CaptureUnavailableError
from watchparty.services.party import WatchParty
from watchparty.services.rendezvous import (
    DataConnection,
    MediaCall,
    PeerError,
    PeerErrorKind,
    PeerIdentity,
    RemoteStream,
)


async def settle(rounds: int = 20) -> None:
    """Let scheduled deliveries and spawned tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeVideoTrack(MediaStreamTrack):
    kind = "video"

    def __init__(self, width: int = 1280, height: int = 720) -> None:
        super().__init__()
        self.width = width
        self.height = height
        self.content_hint = ""

    async def recv(self) -> av.VideoFrame:
        await asyncio.sleep(0.005)
        return av.VideoFrame(width=self.width, height=self.height, format="yuv420p")


class FakeAudioTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self) -> Any:
        raise NotImplementedError


def make_capture(width: int = 1280, height: int = 720) -> CaptureStream:
    return CaptureStream(
        video_track=FakeVideoTrack(width, height),
        audio_tracks=[FakeAudioTrack()],
        width=width,
        height=height,
    )


async def granted_capture() -> CaptureStream:
    return make_capture()


async def denied_capture() -> CaptureStream:
    raise CaptureUnavailableError("Permission denied")


class FakeConnection(DataConnection):
    def __init__(self, peer: str, connection_id: str, *, label: str = "party") -> None:
        super().__init__(peer, connection_id, label=label)
        self.remote: FakeConnection | None = None
        self.sent: list[dict[str, Any]] = []
        self.received: list[dict[str, Any]] = []
        self.closed = False

    def send(self, message: dict[str, Any]) -> None:
        if not self.open:
            raise ConnectionError(f"Connection to {self.peer} is not open")
        payload = json.loads(json.dumps(message))
        self.sent.append(payload)
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote.deliver, payload)

    def deliver(self, payload: Any) -> None:
        if not self.open:
            return
        self.received.append(payload)
        self.emit("data", payload)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.open = False
        self.emit("close")
        if self.remote is not None and not self.remote.closed:
            asyncio.ensure_future(self.remote.close())

    def received_of(self, kind: str) -> list[dict[str, Any]]:
        return [payload for payload in self.received if isinstance(payload, dict) and payload.get("type") == kind]


class FakePeerConnection:
    def __init__(self, senders: Sequence[Any] = ()) -> None:
        self._senders = list(senders)

    def getSenders(self) -> list[Any]:
        return list(self._senders)


class FakeCall(MediaCall):
    def __init__(self, peer: str, connection_id: str, tracks: Sequence[MediaStreamTrack] = ()) -> None:
        super().__init__(peer, connection_id)
        self.tracks = list(tracks)
        self.remote: FakeCall | None = None
        self.answered = False
        self.closed = False

    @property
    def peer_connection(self) -> FakePeerConnection:
        return FakePeerConnection()

    async def answer(self, tracks: Sequence[MediaStreamTrack] = ()) -> None:
        self.answered = True
        self.emit("stream", RemoteStream(peer=self.peer, tracks=list(self.tracks)))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.emit("close")
        if self.remote is not None and not self.remote.closed:
            asyncio.ensure_future(self.remote.close())


class FakeIdentity(PeerIdentity):
    def __init__(self, network: "FakeNetwork", peer_id: str) -> None:
        super().__init__(peer_id)
        self.network = network
        self.opened = False
        self.destroyed = False
        self.reconnects = 0
        self.links: list[FakeConnection | FakeCall] = []
        self.outbound_calls: list[FakeCall] = []

    async def open(self) -> None:
        error = self.network.open_errors.pop(self.peer_id, None)
        if error is not None:
            raise error
        if self.peer_id in self.network.identities:
            raise PeerError(PeerErrorKind.UNAVAILABLE_ID, f'ID "{self.peer_id}" is taken')
        self.network.identities[self.peer_id] = self
        self.opened = True

    async def connect(self, peer: str, *, label: str = "party") -> FakeConnection:
        connection_id = self.network.next_id("dc")
        connection = FakeConnection(peer, connection_id, label=label)
        self.links.append(connection)
        target = self.network.identities.get(peer)
        loop = asyncio.get_running_loop()
        if target is None:
            loop.call_soon(self._fail, PeerError(PeerErrorKind.PEER_UNAVAILABLE, f"Could not connect to peer {peer}"))
            return connection

        remote = FakeConnection(self.peer_id, connection_id, label=label)
        connection.remote, remote.remote = remote, connection
        target.links.append(remote)
        target.emit("connection", remote)
        loop.call_soon(self._open_pair, remote, connection)
        return connection

    async def call(self, peer: str, tracks: Sequence[MediaStreamTrack]) -> FakeCall | None:
        outbound = FakeCall(peer, self.network.next_id("mc"), tracks)
        self.links.append(outbound)
        self.outbound_calls.append(outbound)
        target = self.network.identities.get(peer)
        if target is not None:
            inbound = FakeCall(self.peer_id, outbound.connection_id, tracks)
            outbound.remote, inbound.remote = inbound, outbound
            target.links.append(inbound)
            target.emit("call", inbound)
        return outbound

    async def reconnect(self) -> None:
        self.reconnects += 1

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        if self.network.identities.get(self.peer_id) is self:
            del self.network.identities[self.peer_id]
        for link in list(self.links):
            await link.close()

    def _fail(self, error: PeerError) -> None:
        if not self.destroyed and self.listeners("error"):
            self.emit("error", error)

    @staticmethod
    def _open_pair(*connections: FakeConnection) -> None:
        if any(connection.closed for connection in connections):
            return
        for connection in connections:
            connection.open = True
            connection.emit("open")


class FakeNetwork:
    """Stands in for the rendezvous server and the peer-to-peer transport."""

    def __init__(self) -> None:
        self.identities: dict[str, FakeIdentity] = {}
        self.open_errors: dict[str, PeerError] = {}
        self.created: list[FakeIdentity] = []
        self._ids = itertools.count(1)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):04d}"

    def factory(self, peer_id: str | None = None) -> FakeIdentity:
        identity = FakeIdentity(self, peer_id or f"guest-{next(self._ids):04d}")
        self.created.append(identity)
        return identity


class RecordingBitrate:
    def __init__(self) -> None:
        self.calls: list[Any] = []

    async def apply(self, call: Any) -> bool:
        self.calls.append(call)
        return True


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def make_party(network: FakeNetwork):
    def _make(**overrides: Any) -> WatchParty:
        options: dict[str, Any] = {
            "capture_factory": granted_capture,
            "capability_check": lambda: True,
            "bitrate": RecordingBitrate(),
            "code_generator": lambda: "B7K4XQ",
        }
        options.update(overrides)
        return WatchParty(network.factory, **options)

    return _make
