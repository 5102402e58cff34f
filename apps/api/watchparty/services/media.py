"""Screen capture and the downscaled stream the host sends to guests.

Capture always runs at the monitor's native resolution. When that exceeds the
configured ceiling a :class:`RenderLoop` draws every captured frame into a
smaller canvas and a :class:`ScaledVideoTrack` emits the canvas at a fixed
framerate. A :class:`LocalStream` owns every piece so that one ``stop()``
halts the loop and the hardware capture together.
"""
from __future__ import annotations

import asyncio
import fractions
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable

import av
import mss
import mss.exception
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import VIDEO_CLOCK_RATE, VIDEO_TIME_BASE, MediaStreamError

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_SIZE = (1920, 1080)
MOTION_HINT = "motion"


class CaptureUnavailableError(RuntimeError):
    """Screen capture is unsupported on this machine or was refused."""


def screen_capture_supported() -> bool:
    try:
        with mss.mss() as sct:
            return len(sct.monitors) > 1
    except mss.exception.ScreenShotError:
        return False


def compute_scaled_size(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int] | None:
    """Return the largest size within the ceiling keeping aspect ratio, or ``None`` if already inside it."""

    if width <= max_width and height <= max_height:
        return None
    scale = min(max_width / width, max_height / height)
    return round(width * scale), round(height * scale)


class ScreenCaptureTrack(MediaStreamTrack):
    """Grab one monitor with ``mss`` on a dedicated worker thread."""

    kind = "video"

    def __init__(self, monitor: int = 1, fps: int = 30) -> None:
        super().__init__()
        self.content_hint = ""
        self._fps = fps
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="screen-grab")
        self._local = threading.local()
        with mss.mss() as sct:
            if monitor >= len(sct.monitors):
                raise CaptureUnavailableError(f"Monitor {monitor} is not available")
            self._monitor = dict(sct.monitors[monitor])
        self.width = int(self._monitor["width"])
        self.height = int(self._monitor["height"])
        self._start: float | None = None
        self._frames = 0
        self._closed = False

    def _grab(self) -> np.ndarray:
        sct = getattr(self._local, "sct", None)
        if sct is None:
            sct = self._local.sct = mss.mss()
        shot = sct.grab(self._monitor)
        return np.frombuffer(shot.bgra, dtype=np.uint8).reshape(shot.height, shot.width, 4)

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError

        if self._start is None:
            self._start = time.time()
        else:
            wait = self._start + self._frames / self._fps - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
            if self.readyState != "live":
                raise MediaStreamError

        loop = asyncio.get_running_loop()
        try:
            pixels = await loop.run_in_executor(self._executor, self._grab)
        except mss.exception.ScreenShotError:
            # The display went away; behave like the user pressed "stop sharing".
            logger.warning("Screen grab failed, ending capture", exc_info=True)
            self.stop()
            raise MediaStreamError

        frame = av.VideoFrame.from_ndarray(pixels, format="bgra")
        frame.pts = self._frames
        frame.time_base = fractions.Fraction(1, self._fps)
        self._frames += 1
        return frame

    def _close_grabber(self) -> None:
        sct = getattr(self._local, "sct", None)
        if sct is not None:
            self._local.sct = None
            sct.close()

    def stop(self) -> None:
        super().stop()
        if self._closed:
            return
        self._closed = True
        # Runs on the grab thread, which owns the mss handle, before it exits.
        self._executor.submit(self._close_grabber)
        self._executor.shutdown(wait=False)


@dataclass(slots=True)
class CaptureStream:
    """Raw capture as handed over by the operating system."""

    video_track: MediaStreamTrack
    audio_tracks: list[MediaStreamTrack] = field(default_factory=list)
    width: int | None = None
    height: int | None = None

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [self.video_track, *self.audio_tracks]


async def request_screen_capture(config: Settings | None = None) -> CaptureStream:
    """Open the configured monitor (and optional audio device) at full quality."""

    cfg = config or default_settings
    if not screen_capture_supported():
        raise CaptureUnavailableError("Screen capture is not supported on this system")

    try:
        video = ScreenCaptureTrack(monitor=cfg.capture_monitor, fps=min(cfg.scale_fps, cfg.max_framerate))
    except mss.exception.ScreenShotError as exc:
        raise CaptureUnavailableError(str(exc)) from exc

    audio_tracks: list[MediaStreamTrack] = []
    if cfg.capture_audio_device:
        try:
            player = MediaPlayer(cfg.capture_audio_device, format=cfg.capture_audio_format or None)
        except Exception as exc:  # noqa: BLE001 - audio is optional, keep sharing video
            logger.warning("Audio capture unavailable, sharing video only: %s", exc)
        else:
            if player.audio is not None:
                audio_tracks.append(player.audio)

    return CaptureStream(video_track=video, audio_tracks=audio_tracks, width=video.width, height=video.height)


class RenderLoop:
    """Redraw source frames into a downscaled canvas until cancelled.

    ``cancel`` is the loop's cancellation token; it is checked on every
    iteration along with the source track's liveness.
    """

    def __init__(self, source: MediaStreamTrack, width: int, height: int, cancel: asyncio.Event | None = None) -> None:
        self.source = source
        self.width = width
        self.height = height
        self.cancel_token = cancel or asyncio.Event()
        self._canvas: asyncio.Queue[av.VideoFrame | None] = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task[None] | None = None
        self.frames_drawn = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        self.cancel_token.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._paint(None)

    async def next_frame(self) -> av.VideoFrame:
        frame = await self._canvas.get()
        if frame is None:
            self._paint(None)
            raise MediaStreamError
        return frame

    async def _run(self) -> None:
        try:
            while not self.cancel_token.is_set() and self.source.readyState == "live":
                try:
                    frame = await self.source.recv()
                except MediaStreamError:
                    break
                if self.cancel_token.is_set():
                    break
                self._paint(frame.reformat(width=self.width, height=self.height, format="yuv420p"))
                self.frames_drawn += 1
        finally:
            self.cancel_token.set()
            self._paint(None)

    def _paint(self, frame: av.VideoFrame | None) -> None:
        # Keep only the newest canvas; a slow consumer skips stale frames.
        with suppress(asyncio.QueueEmpty):
            self._canvas.get_nowait()
        self._canvas.put_nowait(frame)


class ScaledVideoTrack(MediaStreamTrack):
    """Video track emitting a render loop's canvas at a fixed framerate."""

    kind = "video"

    def __init__(self, render_loop: RenderLoop, fps: int) -> None:
        super().__init__()
        self.content_hint = ""
        self.render_loop = render_loop
        self.width = render_loop.width
        self.height = render_loop.height
        self._fps = fps
        self._start: float | None = None
        self._timestamp = 0

    async def _next_timestamp(self) -> tuple[int, fractions.Fraction]:
        if self._start is None:
            self._start = time.time()
            self._timestamp = 0
        else:
            self._timestamp += int(VIDEO_CLOCK_RATE / self._fps)
            wait = self._start + (self._timestamp / VIDEO_CLOCK_RATE) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        return self._timestamp, VIDEO_TIME_BASE

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError
        try:
            frame = await self.render_loop.next_frame()
        except MediaStreamError:
            self.stop()
            raise
        pts, time_base = await self._next_timestamp()
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def stop(self) -> None:
        super().stop()
        self.render_loop.cancel()


@dataclass(slots=True)
class LocalStream:
    """The host's outbound stream and everything needed to tear it down.

    ``origin_track`` and ``render_loop`` are only set for a derived stream.
    """

    tracks: list[MediaStreamTrack]
    origin_track: MediaStreamTrack | None = None
    render_loop: RenderLoop | None = None
    width: int | None = None
    height: int | None = None

    @property
    def video_track(self) -> MediaStreamTrack | None:
        return next((track for track in self.tracks if track.kind == "video"), None)

    @property
    def derived(self) -> bool:
        return self.origin_track is not None

    def on_source_ended(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` once when the capture source stops."""

        source = self.origin_track or self.video_track
        if source is None:
            return
        if source.readyState == "ended":
            callback()
            return
        source.once("ended", callback)

    def stop(self) -> None:
        if self.render_loop is not None:
            self.render_loop.cancel()
        if self.origin_track is not None:
            with suppress(Exception):
                self.origin_track.stop()
        for track in self.tracks:
            with suppress(Exception):
                track.stop()


def create_scaled_stream(
    capture: CaptureStream,
    max_width: int = 1280,
    max_height: int = 720,
    fps: int = 24,
) -> LocalStream:
    """Downscale ``capture`` when it exceeds the ceiling, else pass it through."""

    source = capture.video_track
    width = capture.width or DEFAULT_SOURCE_SIZE[0]
    height = capture.height or DEFAULT_SOURCE_SIZE[1]

    target = compute_scaled_size(width, height, max_width, max_height)
    if target is None:
        stream = LocalStream(tracks=list(capture.tracks), width=width, height=height)
        _tag_motion(stream)
        return stream

    render_loop = RenderLoop(source, *target)
    scaled = ScaledVideoTrack(render_loop, fps)
    stream = LocalStream(
        tracks=[scaled, *capture.audio_tracks],
        origin_track=source,
        render_loop=render_loop,
        width=target[0],
        height=target[1],
    )

    def _source_ended() -> None:
        render_loop.cancel()
        for track in stream.tracks:
            with suppress(Exception):
                track.stop()

    source.once("ended", _source_ended)
    render_loop.start()
    _tag_motion(stream)
    logger.info("Downscaling capture %dx%d -> %dx%d at %d fps", width, height, target[0], target[1], fps)
    return stream


def _tag_motion(stream: LocalStream) -> None:
    """Mark the outbound video as motion content.

    aiortc encoders do not read ``content_hint``; the tag travels to the UI in
    the party snapshot (``StreamInfo.content_hint``) and to browser senders
    that honour it.
    """

    video = stream.video_track
    if video is not None and hasattr(video, "content_hint"):
        video.content_hint = MOTION_HINT
