"""Tests for the outbound bitrate ceiling."""
from __future__ import annotations

from types import SimpleNamespace

import pytest
from aiortc import RTCPeerConnection, VideoStreamTrack
from aiortc.codecs.vpx import Vp8Encoder
from aiortc.rtp import RTCP_PSFB_APP, RtcpPsfbPacket, pack_remb_fci

from watchparty.services.bitrate import ENCODER_ATTRIBUTE, BitrateController, CappedEncoder, find_video_sender


class ParamSender:
    """Sender exposing a browser-style parameters API."""

    def __init__(self, ready_after: int = 0) -> None:
        self.track = SimpleNamespace(kind="video")
        self.ready_after = ready_after
        self.reads = 0
        self.applied = None

    def getParameters(self):
        self.reads += 1
        encodings = [SimpleNamespace(maxBitrate=None, maxFramerate=None)] if self.reads > self.ready_after else []
        return SimpleNamespace(encodings=encodings)

    async def setParameters(self, params) -> None:
        self.applied = params


class DummyCall:
    def __init__(self, *senders) -> None:
        self.peer = "guest-1"
        self.peer_connection = SimpleNamespace(getSenders=lambda: list(senders))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_controller(sleep: RecordingSleep) -> BitrateController:
    return BitrateController(max_bitrate=1_200_000, max_framerate=24, max_attempts=3, retry_delay=1.5, sleep=sleep)


def test_find_video_sender_ignores_audio() -> None:
    audio = SimpleNamespace(track=SimpleNamespace(kind="audio"))
    video = SimpleNamespace(track=SimpleNamespace(kind="video"))

    assert find_video_sender(SimpleNamespace(getSenders=lambda: [audio, video])) is video
    assert find_video_sender(None) is None


@pytest.mark.asyncio
async def test_applies_ceiling_once_parameters_exist() -> None:
    sleep = RecordingSleep()
    sender = ParamSender(ready_after=1)

    assert await make_controller(sleep).apply(DummyCall(sender)) is True

    encoding = sender.applied.encodings[0]
    assert encoding.maxBitrate == 1_200_000
    assert encoding.maxFramerate == 24
    assert sleep.delays == [1.5]


@pytest.mark.asyncio
async def test_gives_up_after_bounded_attempts() -> None:
    sleep = RecordingSleep()
    sender = ParamSender(ready_after=99)

    assert await make_controller(sleep).apply(DummyCall(sender)) is False

    assert sender.reads == 3
    assert sleep.delays == [1.5, 1.5]
    assert sender.applied is None


@pytest.mark.asyncio
async def test_caps_aiortc_encoder_when_no_parameters_api() -> None:
    sleep = RecordingSleep()
    encoder = SimpleNamespace(target_bitrate=3_000_000)
    sender = SimpleNamespace(track=SimpleNamespace(kind="video"), _RTCRtpSender__encoder=encoder)

    assert await make_controller(sleep).apply(DummyCall(sender)) is True
    assert encoder.target_bitrate == 1_200_000
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_missing_sender_is_retried_quietly() -> None:
    sleep = RecordingSleep()

    assert await make_controller(sleep).apply(DummyCall()) is False
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_reapplying_keeps_a_single_wrapper() -> None:
    encoder = SimpleNamespace(target_bitrate=800_000)
    sender = SimpleNamespace(track=SimpleNamespace(kind="video"), _RTCRtpSender__encoder=encoder)
    controller = make_controller(RecordingSleep())

    assert await controller.apply(DummyCall(sender)) is True
    wrapped = getattr(sender, ENCODER_ATTRIBUTE)
    assert await controller.apply(DummyCall(sender)) is True

    assert getattr(sender, ENCODER_ATTRIBUTE) is wrapped
    assert isinstance(wrapped, CappedEncoder)
    assert encoder.target_bitrate == 800_000


@pytest.mark.asyncio
async def test_ceiling_survives_receiver_bandwidth_estimates() -> None:
    pc = RTCPeerConnection()
    try:
        sender = pc.addTrack(VideoStreamTrack())
        encoder = Vp8Encoder()
        setattr(sender, ENCODER_ATTRIBUTE, encoder)
        call = SimpleNamespace(peer="guest-1", peer_connection=pc)

        assert await make_controller(RecordingSleep()).apply(call) is True

        # The receiver reports far more headroom than the ceiling allows.
        remb = RtcpPsfbPacket(fmt=RTCP_PSFB_APP, ssrc=1234, media_ssrc=0, fci=pack_remb_fci(4_000_000, [sender._ssrc]))
        await sender._handle_rtcp_packet(remb)

        assert encoder.target_bitrate <= 1_200_000
        assert getattr(sender, ENCODER_ATTRIBUTE).target_bitrate <= 1_200_000

        remb = RtcpPsfbPacket(fmt=RTCP_PSFB_APP, ssrc=1234, media_ssrc=0, fci=pack_remb_fci(600_000, [sender._ssrc]))
        await sender._handle_rtcp_packet(remb)

        assert encoder.target_bitrate == 600_000
    finally:
        await pc.close()
