"""Room codes and the peer addresses derived from them."""
from __future__ import annotations

import secrets

from ..core.config import settings


def generate_room_code(length: int | None = None, alphabet: str | None = None) -> str:
    """Return a random human-shareable room code.

    The default alphabet leaves out glyphs that are easy to confuse when read
    aloud or copied by hand (``0``/``O``, ``1``/``I``/``L``).
    """

    chars = alphabet or settings.room_code_alphabet
    size = length or settings.room_code_length
    return "".join(secrets.choice(chars) for _ in range(size))


def normalize_room_code(code: str) -> str:
    return code.strip().upper()


def is_valid_room_code(code: str, alphabet: str | None = None, length: int | None = None) -> bool:
    """Check a user-supplied code after normalization."""

    chars = alphabet or settings.room_code_alphabet
    size = length or settings.room_code_length
    normalized = normalize_room_code(code)
    return len(normalized) == size and all(char in chars for char in normalized)


def derive_peer_address(code: str, prefix: str | None = None) -> str:
    """Map a room code to the host's public peer id.

    Guests compute the host address from the code alone, so the mapping must
    stay deterministic and case-insensitive.
    """

    namespace = settings.peer_id_prefix if prefix is None else prefix
    return f"{namespace}{normalize_room_code(code)}"
