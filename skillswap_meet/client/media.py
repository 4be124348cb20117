# skillswap_meet/client/media.py
"""
Local capture sources for a meeting participant.

The camera/microphone capture is opened once per session and muted by
flipping ``enabled`` on its tracks, never by reopening the device. A screen
capture is opened on demand and may run alongside the camera.
"""
import asyncio
import errno
import functools
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from skillswap_meet.core.config import Settings, settings

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """A local capture device could not be opened."""

    def __init__(self, message: str, busy: bool = False):
        super().__init__(message)
        self.busy = busy


def blank_frame_like(frame):
    """Silence or a black picture with the timing of ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24")
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """
    Relays a capture track. While disabled it keeps the same cadence but sends
    blank frames, so the outgoing sender and the device stay untouched.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        self._last = None
        self._stopped = asyncio.Event()

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        # A stopped ffmpeg source never answers a pending read, so stopping races it
        read = asyncio.ensure_future(self.source.recv())
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({read, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not read.done():
                read.cancel()

        if read.cancelled():
            return self._final_frame()
        try:
            frame = read.result()
        except MediaStreamError:
            # The capture ended on its own (device unplugged, share stopped)
            self.stop()
            return self._final_frame()

        self._last = frame
        if self.enabled:
            return frame
        return blank_frame_like(frame)

    def _final_frame(self):
        # A reader already waiting (an RTP sender) gets one blank frame and moves
        # on to whatever track replaced this one; the next read ends
        if self._last is None:
            raise MediaStreamError
        return blank_frame_like(self._last)

    def stop(self):
        super().stop()
        self._stopped.set()
        self.source.stop()


@dataclass
class LocalStream:
    """Tracks of one capture source ("camera" or "screen")."""
    label: str
    audio: Optional[ToggleableTrack] = None
    video: Optional[ToggleableTrack] = None

    def tracks(self) -> List[ToggleableTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


@dataclass
class OutgoingMedia:
    """What a peer link should currently send, one track per kind."""
    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None

    def track(self, kind: str) -> Optional[MediaStreamTrack]:
        return self.audio if kind == "audio" else self.video


@dataclass
class MediaProvider:
    """Opens local capture devices through ffmpeg (aiortc MediaPlayer)."""
    config: Settings = field(default_factory=lambda: settings)
    capture: bool = True

    async def open_camera(self, audio: bool = True, video: bool = True) -> LocalStream:
        if not (audio or video):
            raise ValueError("Nothing to capture")

        stream = LocalStream("camera")
        try:
            if video:
                player = await self._open(self.config.CAMERA_DEVICE, self.config.CAMERA_FORMAT, {
                    "video_size": self.config.VIDEO_SIZE,
                    "framerate": str(self.config.FRAMERATE)
                })
                stream.video = self._wrap(player, "video")
            if audio:
                player = await self._open(self.config.MICROPHONE_DEVICE, self.config.MICROPHONE_FORMAT, {})
                stream.audio = self._wrap(player, "audio")
        except CaptureError:
            stream.stop()
            raise

        logger.info(f"Camera capture opened (audio={stream.audio is not None}, video={stream.video is not None})")
        return stream

    async def open_screen(self) -> LocalStream:
        player = await self._open(self.config.SCREEN_DEVICE, self.config.SCREEN_FORMAT, {
            "framerate": str(self.config.FRAMERATE)
        })
        stream = LocalStream("screen", video=self._wrap(player, "video"))
        logger.info("Screen capture opened")
        return stream

    async def _open(self, device: str, fmt: str, options: dict) -> MediaPlayer:
        if not self.capture:
            raise CaptureError("Local capture is disabled")

        loop = asyncio.get_running_loop()
        try:
            # Opening the ffmpeg input blocks until the device answers
            return await loop.run_in_executor(
                None, functools.partial(MediaPlayer, device, format=fmt, options=options)
            )
        except (FFmpegError, OSError) as e:
            busy = getattr(e, "errno", None) == errno.EBUSY
            raise CaptureError(f"Cannot open {fmt} device {device}: {e}", busy=busy) from e

    @staticmethod
    def _wrap(player: MediaPlayer, kind: str) -> ToggleableTrack:
        track = getattr(player, kind)
        if track is None:
            for other in (player.audio, player.video):
                if other is not None:
                    other.stop()
            raise CaptureError(f"Device produced no {kind} track")
        return ToggleableTrack(track)
