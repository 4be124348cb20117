# tests/test_media.py
import asyncio
import errno
from fractions import Fraction

import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from conftest import FeedTrack, run_pending
from conftest import video_frame as numbered_frame
from skillswap_meet.client import media
from skillswap_meet.client.media import CaptureError, MediaProvider, ToggleableTrack, blank_frame_like
from skillswap_meet.core.config import Settings


class FrameSource(MediaStreamTrack):
    def __init__(self, kind, frames):
        super().__init__()
        self.kind = kind
        self.frames = list(frames)

    async def recv(self):
        if not self.frames:
            raise MediaStreamError
        return self.frames.pop(0)


def video_frame(value=200):
    frame = VideoFrame.from_ndarray(np.full((48, 64, 3), value, dtype=np.uint8), format="bgr24")
    frame.pts = 3000
    frame.time_base = Fraction(1, 90000)
    return frame


def audio_frame():
    frame = AudioFrame.from_ndarray(np.full((1, 960), 1000, dtype=np.int16), format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 960
    frame.time_base = Fraction(1, 48000)
    return frame


def test_blank_video_frame_keeps_timing():
    blank = blank_frame_like(video_frame())
    assert (blank.width, blank.height) == (64, 48)
    assert blank.pts == 3000
    assert blank.time_base == Fraction(1, 90000)
    assert not blank.to_ndarray(format="bgr24").any()


def test_blank_audio_frame_is_silent():
    blank = blank_frame_like(audio_frame())
    assert blank.samples == 960
    assert blank.sample_rate == 48000
    assert blank.pts == 960
    assert not blank.to_ndarray().any()


async def test_disabled_track_sends_blank_frames():
    track = ToggleableTrack(FrameSource("video", [video_frame(), video_frame()]))
    assert track.kind == "video"

    assert (await track.recv()).to_ndarray(format="bgr24").any()
    track.enabled = False
    assert not (await track.recv()).to_ndarray(format="bgr24").any()


async def test_source_ending_ends_track():
    source = FrameSource("audio", [])
    track = ToggleableTrack(source)
    with pytest.raises(MediaStreamError):
        await track.recv()
    assert track.readyState == "ended"


def test_stop_stops_source():
    source = FrameSource("video", [])
    ToggleableTrack(source).stop()
    assert source.readyState == "ended"


async def test_stop_answers_a_pending_read_with_a_blank_frame():
    source = FeedTrack("video")
    track = ToggleableTrack(source)
    source.queue.put_nowait(numbered_frame(1))
    assert (await track.recv()).pts == 1

    pending = asyncio.ensure_future(track.recv())
    await run_pending()
    track.stop()

    final = await asyncio.wait_for(pending, 1)
    assert final.pts == 1
    assert not final.to_ndarray(format="bgr24").any()
    with pytest.raises(MediaStreamError):
        await track.recv()


async def test_source_ending_after_frames_sends_one_blank_frame():
    source = FeedTrack("video")
    track = ToggleableTrack(source)
    ended = []
    track.on("ended", lambda: ended.append(True))
    source.queue.put_nowait(numbered_frame(5))
    source.queue.put_nowait(None)

    assert (await track.recv()).pts == 5
    final = await track.recv()
    assert not final.to_ndarray(format="bgr24").any()
    assert ended == [True]
    with pytest.raises(MediaStreamError):
        await track.recv()


async def test_capture_disabled_raises():
    provider = MediaProvider(config=Settings(), capture=False)
    with pytest.raises(CaptureError):
        await provider.open_camera()
    with pytest.raises(ValueError):
        await provider.open_camera(audio=False, video=False)


async def test_busy_device_is_reported(monkeypatch):
    def busy_player(*args, **kwargs):
        raise OSError(errno.EBUSY, "Device or resource busy")

    monkeypatch.setattr(media, "MediaPlayer", busy_player)
    with pytest.raises(CaptureError) as exc:
        await MediaProvider(config=Settings()).open_camera()
    assert exc.value.busy


async def test_camera_opens_configured_devices(monkeypatch):
    opened = []

    class StubPlayer:
        def __init__(self, device, format=None, options=None):
            opened.append((device, format, options))
            self.audio = FrameSource("audio", []) if format == "pulse" else None
            self.video = FrameSource("video", []) if format == "v4l2" else None

    monkeypatch.setattr(media, "MediaPlayer", StubPlayer)
    config = Settings(CAMERA_DEVICE="/dev/video2", VIDEO_SIZE="1280x720", FRAMERATE=15)
    stream = await MediaProvider(config=config).open_camera()

    assert opened[0] == ("/dev/video2", "v4l2", {"video_size": "1280x720", "framerate": "15"})
    assert opened[1][1] == "pulse"
    assert stream.audio.kind == "audio"
    assert stream.video.kind == "video"
    stream.stop()
    assert all(track.readyState == "ended" for track in stream.tracks())
