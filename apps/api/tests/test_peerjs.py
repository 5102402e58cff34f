"""Tests for the PeerJS rendezvous client."""
from __future__ import annotations

import asyncio
import json

import pytest

from watchparty.core.config import Settings
from watchparty.services.peerjs import PeerJSIdentity
from watchparty.services.rendezvous import PeerError, PeerErrorKind


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._messages: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._messages.get()
        if message is None:
            raise StopAsyncIteration
        return message

    def queue_message(self, payload: dict) -> None:
        self._messages.put_nowait(json.dumps(payload))

    def hang_up(self) -> None:
        self._messages.put_nowait(None)

    def frames(self) -> list[dict]:
        return [json.loads(raw) for raw in self.sent]


def make_config(**overrides) -> Settings:
    options = {
        "signaling_host": "peer.example",
        "signaling_port": 9000,
        "signaling_path": "/myapp",
        "signaling_secure": False,
        "ice_servers": [],
    }
    options.update(overrides)
    return Settings(**options)


def make_identity(ws: DummyWebSocket, peer_id: str = "bynge-B7K4XQ", **overrides) -> tuple[PeerJSIdentity, list[str]]:
    urls: list[str] = []

    async def connect(url: str) -> DummyWebSocket:
        urls.append(url)
        return ws

    return PeerJSIdentity(peer_id, config=make_config(**overrides), connect=connect), urls


def test_signaling_url_includes_key_and_id() -> None:
    identity, _ = make_identity(DummyWebSocket())

    url = identity.signaling_url

    assert url.startswith("ws://peer.example:9000/myapp/peerjs?key=peerjs&id=bynge-B7K4XQ&token=")
    assert "&version=" in url


def test_guest_identity_gets_random_id() -> None:
    identity = PeerJSIdentity(config=make_config())

    assert identity.peer_id
    assert not identity.peer_id.startswith("bynge-")


@pytest.mark.asyncio
async def test_open_waits_for_server_ack() -> None:
    ws = DummyWebSocket()
    identity, urls = make_identity(ws)
    ws.queue_message({"type": "OPEN"})

    await asyncio.wait_for(identity.open(), timeout=1)

    assert urls == [identity.signaling_url]
    await identity.destroy()
    assert ws.closed
    await identity.destroy()


@pytest.mark.asyncio
async def test_taken_id_is_reported_as_unavailable() -> None:
    ws = DummyWebSocket()
    identity, _ = make_identity(ws)
    ws.queue_message({"type": "ID-TAKEN", "payload": {"msg": "ID is taken"}})

    with pytest.raises(PeerError) as excinfo:
        await asyncio.wait_for(identity.open(), timeout=1)

    assert excinfo.value.kind is PeerErrorKind.UNAVAILABLE_ID
    assert ws.closed


@pytest.mark.asyncio
async def test_invalid_key_is_a_server_error() -> None:
    ws = DummyWebSocket()
    identity, _ = make_identity(ws)
    ws.queue_message({"type": "INVALID-KEY"})

    with pytest.raises(PeerError) as excinfo:
        await asyncio.wait_for(identity.open(), timeout=1)

    assert excinfo.value.kind is PeerErrorKind.SERVER_ERROR


@pytest.mark.asyncio
async def test_unreachable_server_is_a_network_error() -> None:
    async def refuse(_url: str):
        raise OSError("connection refused")

    identity = PeerJSIdentity("bynge-B7K4XQ", config=make_config(), connect=refuse)

    with pytest.raises(PeerError) as excinfo:
        await identity.open()

    assert excinfo.value.kind is PeerErrorKind.NETWORK


@pytest.mark.asyncio
async def test_expired_offer_reports_peer_unavailable() -> None:
    ws = DummyWebSocket()
    identity, _ = make_identity(ws, peer_id="guest-1")
    errors: list[PeerError] = []
    identity.on("error", errors.append)
    ws.queue_message({"type": "OPEN"})
    await asyncio.wait_for(identity.open(), timeout=1)

    ws.queue_message({"type": "EXPIRE", "src": "bynge-ZZZZZZ"})
    await asyncio.sleep(0.01)

    assert [error.kind for error in errors] == [PeerErrorKind.PEER_UNAVAILABLE]
    await identity.destroy()


@pytest.mark.asyncio
async def test_lost_socket_emits_disconnected() -> None:
    ws = DummyWebSocket()
    identity, _ = make_identity(ws)
    disconnected: list[bool] = []
    identity.on("disconnected", lambda: disconnected.append(True))
    ws.queue_message({"type": "OPEN"})
    await asyncio.wait_for(identity.open(), timeout=1)

    ws.hang_up()
    await asyncio.sleep(0.01)

    assert disconnected == [True]
    await identity.destroy()


@pytest.mark.asyncio
async def test_connect_sends_json_data_offer() -> None:
    ws = DummyWebSocket()
    identity, _ = make_identity(ws, peer_id="guest-1")
    ws.queue_message({"type": "OPEN"})
    await asyncio.wait_for(identity.open(), timeout=1)

    connection = await asyncio.wait_for(identity.connect("bynge-B7K4XQ"), timeout=10)

    offer = ws.frames()[-1]
    assert offer["type"] == "OFFER"
    assert offer["dst"] == "bynge-B7K4XQ"
    assert offer["payload"]["type"] == "data"
    assert offer["payload"]["serialization"] == "json"
    assert offer["payload"]["connectionId"] == connection.connection_id
    assert offer["payload"]["sdp"]["type"] == "offer"
    assert connection.open is False
    with pytest.raises(ConnectionError):
        connection.send({"type": "chat"})

    closed: list[bool] = []
    connection.on("close", lambda: closed.append(True))
    await identity.destroy()
    assert closed == [True]
