"""Party control endpoints and the snapshot event stream."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from functools import lru_cache
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from ..schemas.party import (
    ChatRequest,
    ChatResponse,
    JoinRequest,
    QueueAddRequest,
    QueueAddResponse,
    QueueChangeResponse,
    ReactionRequest,
    ReactionResponse,
    VoteRequest,
)
from ..schemas.session import PartySnapshot
from ..services.party import PartyError, PartyNotConnectedError, WatchParty
from ..services.peerjs import create_identity

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def get_party() -> WatchParty:
    """Process-wide session; the API drives one party at a time."""

    return WatchParty(create_identity)


def _raise_http(exc: PartyError) -> NoReturn:
    if isinstance(exc, PartyNotConnectedError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("", response_model=PartySnapshot)
async def read_party(party: WatchParty = Depends(get_party)) -> PartySnapshot:
    return party.snapshot()


@router.post("", response_model=PartySnapshot)
async def create_party(party: WatchParty = Depends(get_party)) -> PartySnapshot:
    """Start hosting: claim a room code and share the screen."""

    return await party.create_party()


@router.post("/join", response_model=PartySnapshot)
async def join_party(payload: JoinRequest, party: WatchParty = Depends(get_party)) -> PartySnapshot:
    return await party.join_party(payload.code)


@router.post("/leave", response_model=PartySnapshot)
async def leave_party(party: WatchParty = Depends(get_party)) -> PartySnapshot:
    await party.leave_party()
    return party.snapshot()


@router.post("/messages", response_model=ChatResponse)
async def send_message(payload: ChatRequest, party: WatchParty = Depends(get_party)) -> ChatResponse:
    try:
        message = party.send_message(payload.text)
    except PartyError as exc:
        _raise_http(exc)
    return ChatResponse(message=message)


@router.post("/reactions", response_model=ReactionResponse)
async def send_reaction(payload: ReactionRequest, party: WatchParty = Depends(get_party)) -> ReactionResponse:
    try:
        reaction = party.send_reaction(payload.emoji)
    except PartyError as exc:
        _raise_http(exc)
    return ReactionResponse(reaction=reaction)


@router.post("/queue", response_model=QueueAddResponse)
async def add_to_queue(payload: QueueAddRequest, party: WatchParty = Depends(get_party)) -> QueueAddResponse:
    try:
        item = party.add_to_queue(payload)
    except PartyError as exc:
        _raise_http(exc)
    return QueueAddResponse(item=item)


@router.post("/queue/{item_id}/vote", response_model=QueueChangeResponse)
async def vote_on_queue(
    item_id: str, payload: VoteRequest, party: WatchParty = Depends(get_party)
) -> QueueChangeResponse:
    try:
        applied = party.vote_on_queue(item_id, payload.vote)
    except PartyError as exc:
        _raise_http(exc)
    return QueueChangeResponse(applied=applied)


@router.delete("/queue/{item_id}", response_model=QueueChangeResponse)
async def remove_from_queue(item_id: str, party: WatchParty = Depends(get_party)) -> QueueChangeResponse:
    try:
        removed = party.remove_from_queue(item_id)
    except PartyError as exc:
        _raise_http(exc)
    return QueueChangeResponse(applied=removed)


@router.websocket("/events")
async def party_events(websocket: WebSocket, party: WatchParty = Depends(get_party)) -> None:
    """Push a snapshot now and after every state change."""

    await websocket.accept()
    pending: asyncio.Queue[PartySnapshot] = asyncio.Queue()
    party.add_listener(pending.put_nowait)
    await pending.put(party.snapshot())

    async def forward() -> None:
        while True:
            snapshot = await pending.get()
            await websocket.send_json(snapshot.model_dump(mode="json", by_alias=True))

    sender = asyncio.create_task(forward())
    try:
        while True:
            # Clients only listen; inbound frames just keep the socket alive.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        party.remove_listener(pending.put_nowait)
        sender.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await sender
        logger.debug("Event stream closed")
