"""Outbound video bitrate ceiling, applied once negotiation has produced send parameters."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[Any]]

# aiortc keeps the per-sender encoder in a name-mangled private slot.
ENCODER_ATTRIBUTE = "_RTCRtpSender__encoder"


class CappedEncoder:
    """Wrap an aiortc encoder so ``target_bitrate`` never exceeds ``max_bitrate``.

    Everything else (``encode``, ``pack``) is forwarded to the wrapped encoder.
    """

    def __init__(self, encoder: Any, max_bitrate: int) -> None:
        self._encoder = encoder
        self.max_bitrate = max_bitrate

    @property
    def target_bitrate(self) -> int:
        return self._encoder.target_bitrate

    @target_bitrate.setter
    def target_bitrate(self, bitrate: int) -> None:
        self._encoder.target_bitrate = min(int(bitrate), self.max_bitrate)

    def __getattr__(self, name: str) -> Any:
        if name == "_encoder":
            raise AttributeError(name)
        return getattr(self._encoder, name)


def find_video_sender(peer_connection: Any) -> Any | None:
    senders = peer_connection.getSenders() if peer_connection is not None else []
    return next(
        (sender for sender in senders if getattr(sender.track, "kind", None) == "video"),
        None,
    )


class BitrateController:
    """Cap a media call's video sender, retrying until the sender is negotiated.

    Send parameters only exist after SDP negotiation finishes, and nothing
    outside the peer connection signals that moment, so the controller polls a
    bounded number of times with a fixed delay and then gives up quietly.
    """

    def __init__(
        self,
        *,
        max_bitrate: int,
        max_framerate: int,
        max_attempts: int = 3,
        retry_delay: float = 1.5,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self.max_bitrate = max_bitrate
        self.max_framerate = max_framerate
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "BitrateController":
        cfg = config or default_settings
        return cls(
            max_bitrate=cfg.max_bitrate,
            max_framerate=cfg.max_framerate,
            max_attempts=cfg.bitrate_max_attempts,
            retry_delay=cfg.bitrate_retry_seconds,
        )

    async def apply(self, call: Any) -> bool:
        """Return ``True`` once the ceiling is set, ``False`` after exhausting attempts."""

        for attempt in range(1, self.max_attempts + 1):
            try:
                if await self._try_apply(call):
                    logger.debug("Bitrate capped for %s on attempt %d", getattr(call, "peer", "?"), attempt)
                    return True
            except Exception as exc:  # noqa: BLE001 - a failed attempt is retried like an unready one
                logger.debug("Bitrate attempt %d failed: %s", attempt, exc)
            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay)

        logger.info("Gave up capping bitrate for %s after %d attempts", getattr(call, "peer", "?"), self.max_attempts)
        return False

    async def _try_apply(self, call: Any) -> bool:
        sender = find_video_sender(getattr(call, "peer_connection", None))
        if sender is None:
            return False

        get_params = getattr(sender, "getParameters", None)
        set_params = getattr(sender, "setParameters", None)
        if callable(get_params) and callable(set_params):
            params = get_params()
            encodings = getattr(params, "encodings", None)
            if not encodings:
                return False
            encodings[0].maxBitrate = self.max_bitrate
            encodings[0].maxFramerate = self.max_framerate
            result = set_params(params)
            if inspect.isawaitable(result):
                await result
            return True

        # aiortc senders expose no parameters API; their encoder appears once
        # negotiation has picked a codec and the first frame is encoded. The
        # sender overwrites target_bitrate on every REMB report, so the encoder
        # is wrapped to keep the ceiling for the life of the call.
        encoder = getattr(sender, ENCODER_ATTRIBUTE, None)
        if encoder is None or not hasattr(encoder, "target_bitrate"):
            return False
        if isinstance(encoder, CappedEncoder):
            encoder.max_bitrate = self.max_bitrate
        else:
            encoder = CappedEncoder(encoder, self.max_bitrate)
            setattr(sender, ENCODER_ATTRIBUTE, encoder)
        encoder.target_bitrate = encoder.target_bitrate
        return True
