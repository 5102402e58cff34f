"""PeerJS-compatible rendezvous client built on websockets and aiortc.

The signaling server only introduces peers: each data connection or media
call negotiates its own ``RTCPeerConnection`` by exchanging OFFER/ANSWER
frames through the server, then traffic flows peer to peer.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from contextlib import suppress
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

import websockets
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ..core.config import Settings, settings as default_settings
from .rendezvous import (
    DataConnection,
    MediaCall,
    PeerError,
    PeerErrorKind,
    PeerIdentity,
    RemoteStream,
)

logger = logging.getLogger(__name__)

PEERJS_VERSION = "1.5.4"

Connector = Callable[[str], Awaitable[Any]]


def build_rtc_configuration(ice_servers: Sequence[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def _describe(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def _session_description(payload: dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


async def _add_remote_candidate(pc: RTCPeerConnection, payload: dict[str, Any] | None) -> None:
    """Apply a trickled ICE candidate sent by a browser peer."""

    if not payload or not payload.get("candidate"):
        return
    raw = payload["candidate"]
    if raw.startswith("candidate:"):
        raw = raw.split(":", 1)[1]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    await pc.addIceCandidate(candidate)


def _emit_error(emitter: Any, error: PeerError) -> None:
    # pyee re-raises "error" events nobody listens to.
    if emitter.listeners("error"):
        emitter.emit("error", error)
    else:
        logger.error("Unhandled peer error (%s): %s", error.kind.value, error)


class PeerJSDataConnection(DataConnection):
    """JSON data channel on its own peer connection."""

    def __init__(self, identity: "PeerJSIdentity", peer: str, connection_id: str, *, label: str = "party") -> None:
        super().__init__(peer, connection_id, label=label)
        self._identity = identity
        self.pc = RTCPeerConnection(identity.rtc_configuration)
        self._channel: Any = None
        self._closed = False
        self.pc.on("connectionstatechange", self._handle_connection_state)

    async def start(self) -> None:
        self._bind(self.pc.createDataChannel(self.label, ordered=True))
        await self.pc.setLocalDescription(await self.pc.createOffer())
        await self._identity.signal(
            "OFFER",
            self.peer,
            {
                "sdp": _describe(self.pc.localDescription),
                "type": "data",
                "connectionId": self.connection_id,
                "label": self.label,
                "reliable": True,
                "serialization": "json",
            },
        )

    async def accept(self, offer: dict[str, Any]) -> None:
        self.pc.on("datachannel", self._bind)
        await self.pc.setRemoteDescription(_session_description(offer))
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        await self._identity.signal(
            "ANSWER",
            self.peer,
            {"sdp": _describe(self.pc.localDescription), "type": "data", "connectionId": self.connection_id},
        )

    async def apply_answer(self, answer: dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(_session_description(answer))

    async def add_candidate(self, candidate: dict[str, Any] | None) -> None:
        await _add_remote_candidate(self.pc, candidate)

    def send(self, message: dict[str, Any]) -> None:
        if not self.open or self._channel is None:
            raise ConnectionError(f"Connection to {self.peer} is not open")
        self._channel.send(json.dumps(message))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.open = False
        if self._channel is not None:
            with suppress(Exception):
                self._channel.close()
        with suppress(Exception):
            await self.pc.close()
        self._identity.forget(self.connection_id)
        self.emit("close")

    def _bind(self, channel: Any) -> None:
        self._channel = channel
        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_channel_close)
        if channel.readyState == "open":
            self._handle_open()

    def _handle_open(self) -> None:
        if self.open or self._closed:
            return
        self.open = True
        self.emit("open")

    def _handle_message(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable frame from %s", self.peer)
            return
        self.emit("data", payload)

    def _handle_channel_close(self) -> None:
        asyncio.ensure_future(self.close())

    def _handle_connection_state(self) -> None:
        if self.pc.connectionState == "failed" and not self._closed:
            _emit_error(self, PeerError(PeerErrorKind.NETWORK, f"Negotiation of connection to {self.peer} failed."))
            asyncio.ensure_future(self.close())


class PeerJSMediaCall(MediaCall):
    """Media call on its own peer connection."""

    def __init__(
        self,
        identity: "PeerJSIdentity",
        peer: str,
        connection_id: str,
        *,
        offer: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(peer, connection_id)
        self._identity = identity
        self._offer = offer
        self.pc = RTCPeerConnection(identity.rtc_configuration)
        self._remote = RemoteStream(peer=peer)
        self._closed = False
        self.pc.on("track", self._handle_track)
        self.pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self.pc

    async def start(self, tracks: Sequence[MediaStreamTrack]) -> None:
        for track in tracks:
            self.pc.addTrack(track)
        await self.pc.setLocalDescription(await self.pc.createOffer())
        await self._identity.signal(
            "OFFER",
            self.peer,
            {
                "sdp": _describe(self.pc.localDescription),
                "type": "media",
                "connectionId": self.connection_id,
                "metadata": None,
            },
        )

    async def answer(self, tracks: Sequence[MediaStreamTrack] = ()) -> None:
        if self._offer is None:
            raise RuntimeError("Only inbound calls can be answered")
        await self.pc.setRemoteDescription(_session_description(self._offer))
        for track in tracks:
            self.pc.addTrack(track)
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        await self._identity.signal(
            "ANSWER",
            self.peer,
            {"sdp": _describe(self.pc.localDescription), "type": "media", "connectionId": self.connection_id},
        )

    async def apply_answer(self, answer: dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(_session_description(answer))

    async def add_candidate(self, candidate: dict[str, Any] | None) -> None:
        await _add_remote_candidate(self.pc, candidate)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            await self.pc.close()
        self._identity.forget(self.connection_id)
        self.emit("close")

    def _handle_track(self, track: MediaStreamTrack) -> None:
        self._remote.tracks.append(track)
        self.emit("stream", self._remote)

    def _handle_connection_state(self) -> None:
        if self.pc.connectionState in {"failed", "closed"} and not self._closed:
            asyncio.ensure_future(self.close())


class PeerJSIdentity(PeerIdentity):
    """Register ``peer_id`` with a PeerJS server and broker connections through it."""

    def __init__(
        self,
        peer_id: str | None = None,
        *,
        config: Settings | None = None,
        connect: Connector | None = None,
    ) -> None:
        super().__init__(peer_id or uuid4().hex)
        self._settings = config or default_settings
        self._connect = connect or websockets.connect
        self._token = secrets.token_hex(6)
        self.rtc_configuration = build_rtc_configuration(self._settings.ice_servers)
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._opening: asyncio.Future[None] | None = None
        self._links: dict[str, PeerJSDataConnection | PeerJSMediaCall] = {}
        self._destroyed = False

    @property
    def signaling_url(self) -> str:
        scheme = "wss" if self._settings.signaling_secure else "ws"
        path = self._settings.signaling_path
        if not path.endswith("/"):
            path = f"{path}/"
        return (
            f"{scheme}://{self._settings.signaling_host}:{self._settings.signaling_port}{path}peerjs"
            f"?key={self._settings.signaling_key}&id={self.peer_id}&token={self._token}&version={PEERJS_VERSION}"
        )

    async def open(self) -> None:
        if self._destroyed:
            raise PeerError(PeerErrorKind.OTHER, "This peer has been destroyed.")
        try:
            self._ws = await self._connect(self.signaling_url)
        except websockets.exceptions.InvalidHandshake as exc:
            raise PeerError(PeerErrorKind.SERVER_ERROR, f"Could not get an ID from the server: {exc}") from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise PeerError(PeerErrorKind.NETWORK, f"Lost connection to server: {exc}") from exc

        self._opening = asyncio.get_running_loop().create_future()
        self._receive_task = asyncio.create_task(self._receive_loop())
        try:
            await self._opening
        except PeerError:
            await self._close_socket()
            raise
        finally:
            self._opening = None

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Registered peer id %s", self.peer_id)

    async def connect(self, peer: str, *, label: str = "party") -> PeerJSDataConnection:
        connection = PeerJSDataConnection(self, peer, f"dc_{secrets.token_hex(6)}", label=label)
        self._links[connection.connection_id] = connection
        await connection.start()
        return connection

    async def call(self, peer: str, tracks: Sequence[MediaStreamTrack]) -> PeerJSMediaCall:
        media_call = PeerJSMediaCall(self, peer, f"mc_{secrets.token_hex(6)}")
        self._links[media_call.connection_id] = media_call
        await media_call.start(tracks)
        return media_call

    async def reconnect(self) -> None:
        if self._destroyed:
            raise PeerError(PeerErrorKind.OTHER, "This peer has been destroyed.")
        await self._close_socket()
        await self.open()

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        for link in list(self._links.values()):
            with suppress(Exception):
                await link.close()
        self._links.clear()
        await self._close_socket()

    async def signal(self, kind: str, dst: str, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise PeerError(PeerErrorKind.NETWORK, "Not connected to the signaling server.")
        await self._ws.send(json.dumps({"type": kind, "dst": dst, "payload": payload}))

    def forget(self, connection_id: str) -> None:
        self._links.pop(connection_id, None)

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Dropping malformed signaling frame")
                    continue
                try:
                    await self._handle_server_message(message)
                except Exception:  # noqa: BLE001 - one bad negotiation must not end the session
                    logger.exception("Failed handling signaling message %s", message.get("type"))
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed:
            pass
        self._handle_socket_closed()

    async def _handle_server_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        payload = message.get("payload") or {}
        src = message.get("src")

        if kind == "OPEN":
            if self._opening is not None and not self._opening.done():
                self._opening.set_result(None)
        elif kind == "HEARTBEAT":
            return
        elif kind == "ID-TAKEN":
            self._fail(PeerError(PeerErrorKind.UNAVAILABLE_ID, f'ID "{self.peer_id}" is taken'))
        elif kind == "INVALID-KEY":
            self._fail(PeerError(PeerErrorKind.SERVER_ERROR, f'API KEY "{self._settings.signaling_key}" is invalid'))
        elif kind == "ERROR":
            self._fail(PeerError(PeerErrorKind.SERVER_ERROR, payload.get("msg") or "Signaling server error"))
        elif kind == "LEAVE":
            await self._drop_peer(src)
        elif kind == "EXPIRE":
            await self._drop_peer(src)
            self._fail(PeerError(PeerErrorKind.PEER_UNAVAILABLE, f"Could not connect to peer {src}"))
        elif kind == "OFFER":
            await self._handle_offer(src, payload)
        elif kind in {"ANSWER", "CANDIDATE"}:
            link = self._links.get(payload.get("connectionId", ""))
            if link is None:
                logger.debug("No connection %s for %s frame", payload.get("connectionId"), kind)
                return
            if kind == "ANSWER":
                await link.apply_answer(payload["sdp"])
            else:
                await link.add_candidate(payload.get("candidate"))
        else:
            logger.debug("Ignoring signaling message %s", kind)

    async def _handle_offer(self, src: str, payload: dict[str, Any]) -> None:
        connection_id = payload.get("connectionId") or f"dc_{secrets.token_hex(6)}"
        if payload.get("type") == "media":
            media_call = PeerJSMediaCall(self, src, connection_id, offer=payload["sdp"])
            self._links[connection_id] = media_call
            self.emit("call", media_call)
            return

        connection = PeerJSDataConnection(self, src, connection_id, label=payload.get("label") or "party")
        self._links[connection_id] = connection
        # Handlers must be attached before the channel can open.
        self.emit("connection", connection)
        await connection.accept(payload["sdp"])

    async def _drop_peer(self, peer: str | None) -> None:
        for link in [link for link in self._links.values() if link.peer == peer]:
            await link.close()

    def _fail(self, error: PeerError) -> None:
        if self._opening is not None and not self._opening.done():
            self._opening.set_exception(error)
            return
        _emit_error(self, error)

    def _handle_socket_closed(self) -> None:
        if self._destroyed:
            return
        if self._opening is not None and not self._opening.done():
            self._opening.set_exception(PeerError(PeerErrorKind.NETWORK, "Lost connection to server."))
            return
        logger.warning("Signaling connection for %s closed", self.peer_id)
        self.emit("disconnected")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.signaling_heartbeat_seconds)
            try:
                await self._ws.send(json.dumps({"type": "HEARTBEAT"}))
            except websockets.exceptions.ConnectionClosed:
                return

    async def _close_socket(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._receive_task):
            if task is None or task is current:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._heartbeat_task = None
        self._receive_task = None
        if self._ws is not None:
            with suppress(Exception):
                await self._ws.close()
            self._ws = None


def create_identity(peer_id: str | None = None) -> PeerJSIdentity:
    return PeerJSIdentity(peer_id)
