"""Tests for the chat log and reaction expiry."""
from __future__ import annotations

import asyncio
import random

import pytest

from watchparty.schemas.messages import ChatMessage, ReactionMessage, Role, SystemMessage
from watchparty.services.chat import ChatLog, ReactionBoard, sanitize_chat_text


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_chat_log_dedupes_by_id() -> None:
    log = ChatLog()
    message = ChatMessage(sender="Host", sender_role=Role.HOST, text="hi")

    assert log.add(message)
    assert not log.add(message)
    assert log.add(SystemMessage(text="A guest joined the party"))
    assert [m.type for m in log.messages] == ["chat", "system"]

    log.clear()
    assert len(log) == 0


def test_reaction_position_within_band() -> None:
    board = ReactionBoard(rng=random.Random(7))

    for _ in range(50):
        shown = board.add(ReactionMessage(emoji="😂", sender="Host"))
        assert 10 <= shown.x <= 90


def test_reactions_prune_by_clock_without_a_loop() -> None:
    clock = FakeClock()
    board = ReactionBoard(ttl=3.0, clock=clock)
    board.add(ReactionMessage(emoji="🎉", sender="Guest-ab12"))

    clock.now += 2.9
    assert len(board.active()) == 1
    clock.now += 0.2
    assert board.active() == []


def test_duplicate_reaction_is_ignored() -> None:
    board = ReactionBoard()
    reaction = ReactionMessage(emoji="🎉", sender="Host")

    assert board.add(reaction) is not None
    assert board.add(reaction) is None
    assert len(board) == 1


@pytest.mark.asyncio
async def test_reactions_expire_on_the_loop() -> None:
    expired = []
    board = ReactionBoard(ttl=0.01, on_expire=expired.append)
    reaction = ReactionMessage(emoji="❤️", sender="Host")

    board.add(reaction)
    await asyncio.sleep(0.05)

    assert [r.id for r in expired] == [reaction.id]
    assert len(board) == 0


@pytest.mark.asyncio
async def test_clear_cancels_pending_expiry() -> None:
    expired = []
    board = ReactionBoard(ttl=0.01, on_expire=expired.append)
    board.add(ReactionMessage(emoji="❤️", sender="Host"))

    board.clear()
    await asyncio.sleep(0.05)

    assert expired == []


def test_chat_text_is_sanitized() -> None:
    cleaned = sanitize_chat_text('  hi <script>alert("x")</script><b>all</b>  ')

    assert "<script" not in cleaned
    assert "alert" not in cleaned
    assert cleaned == "hi <b>all</b>"
    assert sanitize_chat_text("<script>alert(1)</script>") == ""
    assert sanitize_chat_text("popcorn?") == "popcorn?"
