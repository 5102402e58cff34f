"""Watch-party session: lifecycle, relay dispatch and replicated state.

One :class:`WatchParty` drives one session at a time. Every callback runs on
the event loop thread, so each handler reads and writes its piece of state in
one step and never awaits in between.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from pydantic import ValidationError

from ..core.config import Settings, settings as default_settings
from ..schemas.messages import (
    HOST_ONLY_TYPES,
    RELAYABLE_TYPES,
    ChatMessage,
    PartyMessage,
    QueueAddMessage,
    QueueCandidate,
    QueueItem,
    QueueRemoveMessage,
    QueueSyncMessage,
    QueueVoteMessage,
    ReactionMessage,
    Role,
    SystemMessage,
    WireModel,
    make_id,
    now_ms,
    parse_message,
)
from ..schemas.session import Participant, PartySnapshot, SessionStatus, StreamInfo
from . import room_codes
from .bitrate import BitrateController
from .chat import ChatLog, ReactionBoard, sanitize_chat_text
from .media import (
    CaptureStream,
    CaptureUnavailableError,
    LocalStream,
    create_scaled_stream,
    request_screen_capture,
    screen_capture_supported,
)
from .queue import WatchQueue
from .relay import RelayHub
from .rendezvous import (
    DataConnection,
    IdentityFactory,
    MediaCall,
    PeerError,
    PeerErrorKind,
    PeerIdentity,
    RemoteStream,
)

logger = logging.getLogger(__name__)

CAPTURE_REQUIRED = "Screen sharing is required to host a party. Please allow screen sharing and try again."
CAPTURE_UNSUPPORTED = "Screen sharing is not supported on this device, so it cannot host a party."
HOST_ENDED = "The host ended the party."
HOST_LOST = "Connection to host lost."
GUEST_JOINED = "A guest joined the party"
GUEST_LEFT = "A guest left the party"

_PEER_ERROR_TEXT = {
    PeerErrorKind.UNAVAILABLE_ID: "Room creation failed. Please try again.",
    PeerErrorKind.PEER_UNAVAILABLE: "Room not found. Check your code and try again.",
    PeerErrorKind.NETWORK: "Network error. Check your connection.",
    PeerErrorKind.SERVER_ERROR: "Connection server is unavailable. Try again later.",
}

Listener = Callable[[PartySnapshot], Any]
CaptureFactory = Callable[[], Awaitable[CaptureStream]]

_UNSET: Any = object()


class PartyError(RuntimeError):
    """An operation the current party cannot perform."""


class PartyNotConnectedError(PartyError):
    """Raised for relay, queue and chat operations outside the connected state."""


def describe_peer_error(error: PeerError) -> str:
    """Turn an identity error into the message shown to the user."""

    return _PEER_ERROR_TEXT.get(error.kind) or error.detail or "Connection failed."


@dataclass
class _GuestCall:
    call: MediaCall
    tracks: list[MediaStreamTrack] = field(default_factory=list)


class WatchParty:
    """Host or guest side of one watch party."""

    def __init__(
        self,
        identity_factory: IdentityFactory,
        *,
        capture_factory: CaptureFactory | None = None,
        capability_check: Callable[[], bool] | None = None,
        bitrate: BitrateController | None = None,
        code_generator: Callable[[], str] | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        self._settings = cfg
        self._identity_factory = identity_factory
        self._capture_factory = capture_factory or (lambda: request_screen_capture(cfg))
        self._capability_check = capability_check or screen_capture_supported
        self._bitrate = bitrate or BitrateController.from_settings(cfg)
        self._generate_code = code_generator or (
            lambda: room_codes.generate_room_code(cfg.room_code_length, cfg.room_code_alphabet)
        )
        self._media_relay = MediaRelay()

        self.status = SessionStatus.IDLE
        self.role: Role | None = None
        self.room_code: str | None = None
        self.error: str | None = None
        self.local_stream: LocalStream | None = None
        self.remote_stream: RemoteStream | None = None
        self.participants: list[Participant] = []
        self.chat = ChatLog()
        self.reactions = ReactionBoard(cfg.reaction_ttl_seconds, on_expire=lambda _reaction: self._notify())
        self.queue = WatchQueue()
        self.relay = RelayHub()

        self._identity: PeerIdentity | None = None
        self._host_connection: DataConnection | None = None
        self._inbound_call: MediaCall | None = None
        self._guest_calls: dict[str, _GuestCall] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._listeners: list[Listener] = []
        self._can_host: bool | None = None
        # Nothing to tear down until a create or join starts.
        self._cleaned_up = True

    # ------------------------------------------------------------------ state

    @property
    def can_host(self) -> bool:
        if self._can_host is None:
            self._can_host = bool(self._capability_check())
        return self._can_host

    @property
    def peer_id(self) -> str | None:
        return self._identity.peer_id if self._identity is not None else None

    def snapshot(self) -> PartySnapshot:
        return PartySnapshot(
            status=self.status,
            role=self.role,
            room_code=self.room_code,
            peer_id=self.peer_id,
            local_stream=_local_stream_info(self.local_stream),
            remote_stream=_remote_stream_info(self.remote_stream),
            participants=list(self.participants),
            messages=self.chat.messages,
            reactions=self.reactions.active(),
            queue=self.queue.ranked(),
            error=self.error,
            can_host=self.can_host,
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    # -------------------------------------------------------------- lifecycle

    async def create_party(self) -> PartySnapshot:
        """Register a fresh room, start screen capture and wait for guests."""

        if not self.can_host:
            await self.leave_party()
            self._set_status(SessionStatus.ERROR, role=None, room_code=None, error=CAPTURE_UNSUPPORTED)
            return self.snapshot()

        await self._release_resources()
        self._cleaned_up = False
        self._reset_collections()
        self._set_status(SessionStatus.CREATING, role=Role.HOST, room_code=None, error=None)

        code = self._generate_code()
        identity = self._identity_factory(room_codes.derive_peer_address(code, self._settings.peer_id_prefix))
        self._identity = identity
        try:
            await identity.open()
        except PeerError as exc:
            logger.warning("Could not register room %s: %s", code, exc)
            if self._identity is identity:
                await self._abort_attempt(describe_peer_error(exc))
            return self.snapshot()
        if self._identity is not identity:
            return self.snapshot()

        self._set_status(SessionStatus.CREATING, room_code=code)

        try:
            capture = await self._capture_factory()
        except CaptureUnavailableError as exc:
            logger.warning("Screen capture refused: %s", exc)
            if self._identity is identity:
                await self._abort_attempt(CAPTURE_REQUIRED)
            return self.snapshot()
        if self._identity is not identity:
            for track in capture.tracks:
                with suppress(Exception):
                    track.stop()
            return self.snapshot()

        stream = create_scaled_stream(
            capture,
            self._settings.scale_max_width,
            self._settings.scale_max_height,
            min(self._settings.scale_fps, self._settings.max_framerate),
        )
        self.local_stream = stream
        stream.on_source_ended(lambda: self._handle_source_ended(stream))

        identity.on("connection", self._handle_guest_connection)
        identity.on("error", self._handle_host_identity_error)
        identity.on("disconnected", lambda: self._handle_identity_disconnected(identity))

        self._set_status(SessionStatus.CONNECTED)
        logger.info("Hosting party %s as %s", code, identity.peer_id)
        return self.snapshot()

    async def join_party(self, code: str) -> PartySnapshot:
        """Connect to the host behind ``code``; becomes connected once the channel opens."""

        normalized = room_codes.normalize_room_code(code)
        await self._release_resources()
        self._cleaned_up = False
        self._reset_collections()
        self._set_status(SessionStatus.JOINING, role=Role.GUEST, room_code=None, error=None)
        if not room_codes.is_valid_room_code(
            normalized, self._settings.room_code_alphabet, self._settings.room_code_length
        ):
            logger.info("Rejecting malformed room code %r", normalized)
            await self._abort_attempt(_PEER_ERROR_TEXT[PeerErrorKind.PEER_UNAVAILABLE])
            return self.snapshot()

        identity = self._identity_factory(None)
        self._identity = identity
        try:
            await identity.open()
        except PeerError as exc:
            logger.warning("Could not register guest identity: %s", exc)
            if self._identity is identity:
                await self._abort_attempt(describe_peer_error(exc))
            return self.snapshot()
        if self._identity is not identity:
            return self.snapshot()

        identity.on("call", self._handle_incoming_call)
        identity.on("error", self._handle_guest_identity_error)
        identity.on("disconnected", lambda: self._handle_identity_disconnected(identity))

        host_address = room_codes.derive_peer_address(normalized, self._settings.peer_id_prefix)
        try:
            connection = await identity.connect(host_address, label="party")
        except PeerError as exc:
            logger.warning("Could not reach %s: %s", host_address, exc)
            if self._identity is identity:
                await self._abort_attempt(describe_peer_error(exc))
            return self.snapshot()
        if self._identity is not identity:
            with suppress(Exception):
                await connection.close()
            return self.snapshot()

        self._host_connection = connection
        connection.on("open", lambda: self._handle_host_open(connection, normalized))
        connection.on("data", lambda payload: self._handle_data(payload, sender=connection.peer))
        connection.on("close", lambda: self._handle_host_lost(connection, HOST_ENDED))
        connection.on("error", lambda _exc: self._handle_host_lost(connection, HOST_LOST))
        if connection.open:
            self._handle_host_open(connection, normalized)
        return self.snapshot()

    async def leave_party(self) -> None:
        """Tear everything down and return to idle; repeated calls are no-ops."""

        if self._cleaned_up:
            return
        self._cleaned_up = True
        await self._release_resources()
        self._reset_collections()
        self._set_status(SessionStatus.IDLE, role=None, room_code=None, error=None)
        logger.info("Left party")

    # ------------------------------------------------------------- operations

    def send_message(self, text: str) -> ChatMessage | None:
        self._require_connected()
        cleaned = sanitize_chat_text(text)
        if not cleaned:
            return None
        message = ChatMessage(sender=self._display_name(), sender_role=self.role, text=cleaned)
        self.chat.add(message)
        self._send(message)
        self._notify()
        return message

    def send_reaction(self, emoji: str) -> ReactionMessage | None:
        self._require_connected()
        cleaned = emoji.strip()
        if not cleaned:
            return None
        reaction = ReactionMessage(emoji=cleaned, sender=self._display_name())
        self.reactions.add(reaction)
        self._send(reaction)
        self._notify()
        return reaction

    def add_to_queue(self, candidate: QueueCandidate) -> QueueItem | None:
        """Queue ``candidate`` unless the same title is already queued."""

        self._require_connected()
        if self.queue.contains(candidate.tmdb_id, candidate.media_type):
            return None
        item = QueueItem(
            id=candidate.id or make_id("q"),
            tmdb_id=candidate.tmdb_id,
            media_type=candidate.media_type,
            title=candidate.title,
            poster=candidate.poster,
            year=candidate.year,
            added_by=self._display_name(),
        )
        if not self.queue.add(item):
            return None
        self._send(QueueAddMessage(item=item))
        self._notify()
        return item

    def vote_on_queue(self, item_id: str, vote: int) -> bool:
        self._require_connected()
        if vote not in (-1, 1):
            raise PartyError("Vote must be -1 or 1")
        voter_peer_id = self.peer_id or "unknown"
        if not self.queue.vote(item_id, voter_peer_id, vote):
            return False
        self._send(
            QueueVoteMessage(item_id=item_id, vote=vote, voter=self._display_name(), voter_peer_id=voter_peer_id)
        )
        self._notify()
        return True

    def remove_from_queue(self, item_id: str) -> bool:
        # Any participant may remove any item; there is no host-only rule.
        self._require_connected()
        if not self.queue.remove(item_id):
            return False
        self._send(QueueRemoveMessage(item_id=item_id))
        self._notify()
        return True

    # ------------------------------------------------------------ host events

    def _handle_guest_connection(self, connection: DataConnection) -> None:
        if self._cleaned_up:
            self._spawn(connection.close())
            return
        connection.on("open", lambda: self._handle_guest_open(connection))
        connection.on("data", lambda payload: self._handle_data(payload, sender=connection.peer))
        connection.on("close", lambda: self._handle_guest_closed(connection))
        connection.on("error", lambda _exc: self._handle_guest_closed(connection))
        if connection.open:
            self._handle_guest_open(connection)

    def _handle_guest_open(self, connection: DataConnection) -> None:
        if self._cleaned_up or self.role is not Role.HOST:
            return
        already_here = self.relay.join(connection)
        self.participants = [p for p in self.participants if p.peer_id != connection.peer]
        self.participants.append(Participant(peer_id=connection.peer, role=Role.GUEST, joined_at=now_ms()))
        logger.info("Guest %s joined (%d already here)", connection.peer, len(already_here))

        self._broadcast_system(GUEST_JOINED)
        # Late joiners catch up on the queue only; chat and reactions are not replayed.
        self.relay.send_to(connection.peer, QueueSyncMessage(queue=self.queue.items))
        self._spawn(self._call_guest(connection.peer))
        self._notify()

    def _handle_guest_closed(self, connection: DataConnection) -> None:
        if self._cleaned_up:
            return
        if self.relay.get(connection.peer) is not connection:
            self._spawn(connection.close())
            return
        self.relay.leave(connection.peer)
        guest_call = self._guest_calls.pop(connection.peer, None)
        if guest_call is not None:
            self._spawn(self._close_guest_call(guest_call))
        self.participants = [p for p in self.participants if p.peer_id != connection.peer]
        logger.info("Guest %s left", connection.peer)
        self._broadcast_system(GUEST_LEFT)
        self._spawn(connection.close())
        self._notify()

    async def _call_guest(self, peer: str) -> None:
        identity = self._identity
        stream = self.local_stream
        if identity is None or stream is None:
            return
        # Each guest gets its own subscription so senders never split frames.
        tracks = [self._media_relay.subscribe(track) for track in stream.tracks]
        try:
            media_call = await identity.call(peer, tracks)
        except PeerError as exc:
            logger.warning("Could not call guest %s: %s", peer, exc)
            media_call = None
        if media_call is None or self._cleaned_up or peer not in self.relay:
            for track in tracks:
                track.stop()
            if media_call is not None:
                with suppress(Exception):
                    await media_call.close()
            return

        guest_call = _GuestCall(call=media_call, tracks=tracks)
        self._guest_calls[peer] = guest_call
        media_call.on("close", lambda: self._handle_guest_call_closed(peer, guest_call))
        await self._bitrate.apply(media_call)

    def _handle_guest_call_closed(self, peer: str, guest_call: _GuestCall) -> None:
        if self._guest_calls.get(peer) is guest_call:
            del self._guest_calls[peer]
        for track in guest_call.tracks:
            track.stop()

    async def _close_guest_call(self, guest_call: _GuestCall) -> None:
        with suppress(Exception):
            await guest_call.call.close()
        for track in guest_call.tracks:
            with suppress(Exception):
                track.stop()

    def _handle_host_identity_error(self, error: PeerError) -> None:
        if self._cleaned_up:
            return
        if error.kind is PeerErrorKind.UNAVAILABLE_ID:
            self._set_status(SessionStatus.ERROR, error=describe_peer_error(error))
            return
        logger.warning("Host identity error (%s): %s", error.kind.value, error)

    def _handle_source_ended(self, stream: LocalStream) -> None:
        if self._cleaned_up or self.local_stream is not stream:
            return
        logger.info("Screen capture ended, closing party")
        self._spawn(self.leave_party())

    # ----------------------------------------------------------- guest events

    def _handle_host_open(self, connection: DataConnection, code: str) -> None:
        if self._cleaned_up or connection is not self._host_connection:
            return
        self._set_status(SessionStatus.CONNECTED, room_code=code)
        logger.info("Joined party %s", code)

    def _handle_host_lost(self, connection: DataConnection, message: str) -> None:
        if self._cleaned_up or connection is not self._host_connection:
            return
        logger.warning("Lost host connection: %s", message)
        self._host_connection = None
        self.remote_stream = None
        self._set_status(SessionStatus.ERROR, error=message)
        self._spawn(self._release_resources())

    def _handle_guest_identity_error(self, error: PeerError) -> None:
        if self._cleaned_up:
            return
        message = describe_peer_error(error)
        if self.status is SessionStatus.JOINING:
            self._spawn(self._abort_attempt(message))
            return
        self._host_connection = None
        self.remote_stream = None
        self._set_status(SessionStatus.ERROR, error=message)
        self._spawn(self._release_resources())

    def _handle_incoming_call(self, media_call: MediaCall) -> None:
        if self._cleaned_up or self.role is not Role.GUEST:
            self._spawn(media_call.close())
            return
        previous, self._inbound_call = self._inbound_call, media_call
        if previous is not None:
            self._spawn(previous.close())
        media_call.on("stream", lambda stream: self._handle_remote_stream(media_call, stream))
        media_call.on("close", lambda: self._handle_inbound_call_closed(media_call))
        self._spawn(self._answer(media_call))

    async def _answer(self, media_call: MediaCall) -> None:
        try:
            await media_call.answer()
        except Exception as exc:  # noqa: BLE001 - a broken call must not end the session
            logger.warning("Could not answer call from %s: %s", media_call.peer, exc)

    def _handle_remote_stream(self, media_call: MediaCall, stream: RemoteStream) -> None:
        if self._cleaned_up or media_call is not self._inbound_call:
            return
        self.remote_stream = stream
        self._notify()

    def _handle_inbound_call_closed(self, media_call: MediaCall) -> None:
        if media_call is not self._inbound_call:
            return
        self._inbound_call = None
        self.remote_stream = None
        self._notify()

    def _handle_identity_disconnected(self, identity: PeerIdentity) -> None:
        if self._cleaned_up or identity is not self._identity:
            return
        logger.warning("Rendezvous connection lost, reconnecting as %s", identity.peer_id)
        self._spawn(self._reconnect(identity))

    async def _reconnect(self, identity: PeerIdentity) -> None:
        try:
            await identity.reconnect()
        except PeerError as exc:
            logger.warning("Reconnect failed (%s): %s", exc.kind.value, exc)

    # ----------------------------------------------------------------- relay

    def _handle_data(self, payload: Any, *, sender: str) -> None:
        if self._cleaned_up:
            return
        try:
            message = parse_message(payload)
        except ValidationError as exc:
            logger.warning("Dropping invalid message from %s: %s", sender, exc)
            return

        is_host = self.role is Role.HOST
        if is_host and message.type in HOST_ONLY_TYPES:
            logger.warning("Ignoring %s from guest %s", message.type, sender)
            return

        if isinstance(message, ChatMessage):
            text = sanitize_chat_text(message.text)
            if not text:
                logger.debug("Dropping empty chat from %s", sender)
                return
            message = message.model_copy(update={"text": text})

        if is_host and isinstance(message, QueueAddMessage) and self._conflicts_with_queue(message.item):
            # Same title already queued under another id: resync the sender.
            logger.info("Rejecting duplicate queue-add %s from %s", message.item.id, sender)
            self.relay.send_to(sender, QueueSyncMessage(queue=self.queue.items))
            return

        self._apply(message)
        if is_host and message.type in RELAYABLE_TYPES:
            self.relay.broadcast(message, exclude=sender)
        self._notify()

    def _conflicts_with_queue(self, item: QueueItem) -> bool:
        return self.queue.get(item.id) is None and self.queue.contains(*item.key)

    def _apply(self, message: PartyMessage) -> None:
        if isinstance(message, (ChatMessage, SystemMessage)):
            self.chat.add(message)
        elif isinstance(message, ReactionMessage):
            self.reactions.add(message)
        elif isinstance(message, QueueAddMessage):
            self.queue.add(message.item)
        elif isinstance(message, QueueVoteMessage):
            self.queue.vote(message.item_id, message.voter_peer_id, message.vote)
        elif isinstance(message, QueueRemoveMessage):
            self.queue.remove(message.item_id)
        elif isinstance(message, QueueSyncMessage):
            self.queue.replace(message.queue)

    def _send(self, message: WireModel) -> None:
        if self.role is Role.HOST:
            self.relay.broadcast(message)
            return
        connection = self._host_connection
        if connection is None or not connection.open:
            return
        try:
            connection.send(message.to_wire())
        except Exception as exc:  # noqa: BLE001 - the host channel may be closing
            logger.warning("Could not send to host: %s", exc)

    def _broadcast_system(self, text: str) -> None:
        message = SystemMessage(text=text)
        self.chat.add(message)
        self.relay.broadcast(message)

    # --------------------------------------------------------------- helpers

    def _display_name(self) -> str:
        if self.role is Role.HOST:
            return "Host"
        return f"Guest-{(self.peer_id or '????')[-4:]}"

    def _require_connected(self) -> None:
        if self.status is not SessionStatus.CONNECTED:
            raise PartyNotConnectedError(f"Party is {self.status.value}, not connected")

    def _set_status(
        self,
        status: SessionStatus,
        *,
        role: Role | None = _UNSET,
        room_code: str | None = _UNSET,
        error: str | None = _UNSET,
    ) -> None:
        self.status = status
        if role is not _UNSET:
            self.role = role
        if room_code is not _UNSET:
            self.room_code = room_code
        if error is not _UNSET:
            self.error = error
        self._notify()

    def _reset_collections(self) -> None:
        self.participants = []
        self.chat.clear()
        self.reactions.clear()
        self.queue.clear()
        self.remote_stream = None

    async def _abort_attempt(self, message: str) -> None:
        self._set_status(SessionStatus.ERROR, role=None, room_code=None, error=message)
        await self._release_resources()

    async def _release_resources(self) -> None:
        """Close every transport and media resource; safe on already-closed ones."""

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        stream, self.local_stream = self.local_stream, None
        connections = self.relay.drain()
        guest_calls = list(self._guest_calls.values())
        self._guest_calls.clear()
        host_connection, self._host_connection = self._host_connection, None
        inbound_call, self._inbound_call = self._inbound_call, None
        identity, self._identity = self._identity, None
        self.remote_stream = None

        if stream is not None:
            stream.stop()
        for connection in connections:
            with suppress(Exception):
                await connection.close()
        for guest_call in guest_calls:
            await self._close_guest_call(guest_call)
        if host_connection is not None:
            with suppress(Exception):
                await host_connection.close()
        if inbound_call is not None:
            with suppress(Exception):
                await inbound_call.close()
        if identity is not None:
            with suppress(Exception):
                await identity.destroy()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001 - one bad subscriber must not break the session
                logger.exception("Party listener failed")


def _local_stream_info(stream: LocalStream | None) -> StreamInfo | None:
    if stream is None:
        return None
    return StreamInfo(
        track_kinds=[track.kind for track in stream.tracks],
        width=stream.width,
        height=stream.height,
        derived=stream.derived,
        content_hint=getattr(stream.video_track, "content_hint", ""),
    )


def _remote_stream_info(stream: RemoteStream | None) -> StreamInfo | None:
    if stream is None:
        return None
    return StreamInfo(track_kinds=[track.kind for track in stream.tracks])
