# tests/conftest.py
import asyncio
from collections import defaultdict
from fractions import Fraction
from typing import Dict, List

import numpy as np
import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from aiortc.mediastreams import MediaStreamError
from av import VideoFrame
from pyee.asyncio import AsyncIOEventEmitter

from skillswap_meet.client.media import CaptureError, LocalStream, ToggleableTrack
from skillswap_meet.client.signaling import SignalingClient
from skillswap_meet.core.config import Settings
from skillswap_meet.services import SignalingServices

TEST_SECRET = "test-secret"


async def run_pending(rounds: int = 20) -> None:
    """Lets scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def candidate(n: int = 1, mid: str = "0") -> dict:
    return {
        "candidate": f"candidate:{n} 1 udp 2122260223 192.0.2.{n} {50000 + n} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": 0
    }


# === aiortc-shaped fakes ===

class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


class FeedTrack(MediaStreamTrack):
    """A capture source that yields the frames a test pushes into ``queue``; None ends it."""

    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind
        self.queue: asyncio.Queue = asyncio.Queue()

    async def recv(self):
        frame = await self.queue.get()
        if frame is None:
            raise MediaStreamError
        return frame


def video_frame(pts: int, value: int = 200) -> VideoFrame:
    frame = VideoFrame.from_ndarray(np.full((48, 64, 3), value, dtype=np.uint8), format="bgr24")
    frame.pts = pts
    frame.time_base = Fraction(1, 90000)
    return frame


class FakeSender:
    def __init__(self, track=None):
        self.track = track
        self.replace_error = None
        self.replacements = 0

    def replaceTrack(self, track):
        if self.replace_error is not None:
            raise self.replace_error
        self.replacements += 1
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, direction: str = "sendrecv", track=None):
        self.kind = kind
        self.direction = direction
        self.sender = FakeSender(track)
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakePeerConnection(AsyncIOEventEmitter):
    """Follows the RTCPeerConnection signaling state rules without any networking."""

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.transceivers: List[FakeTransceiver] = []
        self.added_candidates = []
        self.history = []
        self.offers_created = 0
        self.closed = False
        self.close_calls = 0

    def getTransceivers(self):
        return list(self.transceivers)

    def live_senders(self, kind: str):
        return [t for t in self.transceivers if t.kind == kind and not t.stopped]

    def addTrack(self, track):
        for transceiver in self.transceivers:
            if transceiver.kind == track.kind and not transceiver.stopped and transceiver.sender.track is None:
                transceiver.sender.track = track
                transceiver.direction = "sendrecv"
                return transceiver.sender
        transceiver = FakeTransceiver(track.kind, track=track)
        self.transceivers.append(transceiver)
        return transceiver.sender

    def addTransceiver(self, kind, direction="sendrecv"):
        transceiver = FakeTransceiver(kind, direction)
        self.transceivers.append(transceiver)
        return transceiver

    async def createOffer(self):
        self._check_open()
        self.offers_created += 1
        return RTCSessionDescription(sdp=f"offer-{self.offers_created}", type="offer")

    async def createAnswer(self):
        self._check_open()
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f"Cannot create answer in signaling state {self.signalingState}")
        return RTCSessionDescription(sdp="answer", type="answer")

    async def setLocalDescription(self, description):
        self._check_open()
        if description.type == "offer":
            self._transition("stable", "have-local-offer")
        else:
            self._transition("have-remote-offer", "stable")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self._check_open()
        if description.sdp == "malformed":
            raise ValueError("Invalid SDP")
        await asyncio.sleep(0)
        if description.type == "offer":
            self._transition("stable", "have-remote-offer")
        else:
            self._transition("have-local-offer", "stable")
        self.remoteDescription = description
        self.history.append(("remote-description", description.type))

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("No remote description")
        self.added_candidates.append(candidate)
        self.history.append(("candidate", candidate.foundation))

    async def close(self):
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.emit("signalingstatechange")
        self.set_connection_state("closed")

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _transition(self, expected: str, new: str):
        if self.signalingState != expected:
            raise InvalidStateError(f"Cannot go from {self.signalingState} to {new}")
        self.signalingState = new
        self.emit("signalingstatechange")

    def _check_open(self):
        if self.closed:
            raise InvalidStateError("RTCPeerConnection is closed")


class FakeMediaProvider:
    def __init__(self, fail_video=False, fail_audio=False, fail_screen=False, screen_audio=False):
        self.fail_video = fail_video
        self.fail_audio = fail_audio
        self.fail_screen = fail_screen
        self.screen_audio = screen_audio
        self.camera_opens = []
        self.screen_opens = 0

    async def open_camera(self, audio=True, video=True):
        self.camera_opens.append((audio, video))
        if video and self.fail_video:
            raise CaptureError("camera busy", busy=True)
        if audio and self.fail_audio:
            raise CaptureError("microphone denied")
        return LocalStream(
            "camera",
            audio=ToggleableTrack(FakeTrack("audio")) if audio else None,
            video=ToggleableTrack(FakeTrack("video")) if video else None
        )

    async def open_screen(self):
        self.screen_opens += 1
        if self.fail_screen:
            raise CaptureError("screen capture denied")
        return LocalStream(
            "screen",
            audio=ToggleableTrack(FakeTrack("audio")) if self.screen_audio else None,
            video=ToggleableTrack(FakeTrack("video"))
        )


class FeedMediaProvider(FakeMediaProvider):
    """Capture tracks backed by FeedTrack sources the test can push frames into."""

    def __init__(self):
        super().__init__()
        self.feeds: Dict[str, FeedTrack] = {}

    async def open_camera(self, audio=True, video=True):
        self.camera_opens.append((audio, video))
        stream = LocalStream("camera")
        if audio:
            self.feeds["audio"] = FeedTrack("audio")
            stream.audio = ToggleableTrack(self.feeds["audio"])
        if video:
            self.feeds["video"] = FeedTrack("video")
            stream.video = ToggleableTrack(self.feeds["video"])
        return stream

    async def open_screen(self):
        self.screen_opens += 1
        self.feeds["screen"] = FeedTrack("video")
        return LocalStream("screen", video=ToggleableTrack(self.feeds["screen"]))

    def end(self) -> None:
        for feed in self.feeds.values():
            feed.queue.put_nowait(None)


class FakeSignaling:
    """Records emitted events; tests deliver inbound messages by hand."""

    def __init__(self, connection_id: str = "self"):
        self.connection_id = connection_id
        self.sent = []
        self.handlers = defaultdict(list)

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def off(self, event, handler):
        if handler in self.handlers[event]:
            self.handlers[event].remove(handler)

    async def emit(self, event, payload=None):
        self.sent.append((event, dict(payload or {})))
        return True

    async def deliver(self, message: dict):
        for handler in list(self.handlers[message["type"]]):
            result = handler(message)
            if asyncio.iscoroutine(result):
                await result

    def sent_of(self, event: str) -> List[dict]:
        return [payload for name, payload in self.sent if name == event]


# === Loopback: real server services, in-process clients ===

class LoopbackSignaling(SignalingClient):
    def __init__(self, hub: "LoopbackHub", connection_id: str):
        super().__init__(url="ws://loopback/ws/meet", config=hub.config)
        self.hub = hub
        self.connection_id = connection_id
        self.sent = []

    async def emit(self, event, payload=None):
        message = {"type": event, **(payload or {})}
        self.sent.append(message)
        self.hub.services.gateway.handle(self.connection_id, message)
        return True

    @property
    def busy(self) -> bool:
        return bool(self._tasks)


class LoopbackHub:
    def __init__(self, config: Settings):
        self.config = config
        self.services = SignalingServices.create(config)
        self.clients: Dict[str, LoopbackSignaling] = {}

    def connect(self, identity: str) -> LoopbackSignaling:
        connection_id = self.services.registry.on_connect(identity)
        client = LoopbackSignaling(self, connection_id)
        self.clients[connection_id] = client
        return client

    def disconnect(self, client: LoopbackSignaling) -> None:
        self.services.gateway.disconnect(client.connection_id)
        self.clients.pop(client.connection_id, None)

    async def flush(self, rounds: int = 100) -> None:
        """Delivers queued server messages until every client is idle."""
        for _ in range(rounds):
            delivered = False
            for client in list(self.clients.values()):
                connection = self.services.registry.get(client.connection_id)
                while connection is not None and not connection.outbox.empty():
                    client.dispatch(connection.outbox.get_nowait())
                    delivered = True
            await run_pending()
            if not delivered and not any(client.busy for client in self.clients.values()):
                return


@pytest.fixture
def config():
    return Settings(AUTH_SECRET=TEST_SECRET, HEARTBEAT_INTERVAL=30)


@pytest.fixture
def services(config):
    services = SignalingServices.create(config)
    yield services
    services.shutdown()


@pytest.fixture
def hub(config):
    hub = LoopbackHub(config)
    yield hub
    hub.services.shutdown()


@pytest.fixture
def signaling():
    return FakeSignaling()


def drain(services: SignalingServices, connection_id: str) -> List[dict]:
    """Pops every queued message for one connection."""
    connection = services.registry.get(connection_id)
    messages = []
    while connection is not None and not connection.outbox.empty():
        messages.append(connection.outbox.get_nowait())
    return messages
