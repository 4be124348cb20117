# skillswap_meet/client/peer_link.py
"""
Negotiation state machine for one remote participant.

A PeerLink owns exactly one RTCPeerConnection towards one remote connection
in a room. It drives the offer/answer exchange, buffers ICE candidates that
arrive before the matching remote description, swaps outgoing tracks in place
when the local source changes and merges the remote tracks into one view.

States::

    NEW -> OFFER_SENT -> CONNECTED
    NEW -> OFFER_RECEIVED -> ANSWER_SENT -> CONNECTED
    CONNECTED -> RENEGOTIATING -> CONNECTED
    any -> CLOSED

Offer/answer steps of one link are serialised with a FIFO lock, so signaling
messages from one peer are processed in arrival order. Candidates never wait
for the lock: they are queued until the remote description is in place.
"""
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InternalError, InvalidAccessError, InvalidStateError, OperationError
from aiortc.sdp import candidate_from_sdp

from .media import OutgoingMedia

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")

# Raised by aiortc for rejected or malformed descriptions and candidates
NEGOTIATION_ERRORS = (InvalidAccessError, InvalidStateError, InternalError, OperationError, ValueError)

SendFunc = Callable[[str, dict], Awaitable[bool]]


class PeerLinkState(str, Enum):
    NEW = "new"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


def build_configuration(ice_servers: Optional[List[dict]]) -> RTCConfiguration:
    """Turns ``[{"urls": ...}]`` dicts into an aiortc RTCConfiguration."""
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=server["urls"], username=server.get("username"), credential=server.get("credential"))
        for server in ice_servers or []
    ])


def parse_description(payload, expected: str) -> RTCSessionDescription:
    if not isinstance(payload, dict) or payload.get("type") != expected or not payload.get("sdp"):
        raise ValueError(f"Expected an {expected} description")
    return RTCSessionDescription(sdp=payload["sdp"], type=expected)


def parse_candidate(payload) -> Optional[RTCIceCandidate]:
    """
    Converts an RTCIceCandidateInit dict into an aiortc candidate.
    Returns None for the empty end-of-candidates marker.
    """
    if not isinstance(payload, dict):
        raise ValueError("Candidate must be an object")
    line = payload.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    # foundation component transport priority address port "typ" type
    if len(line.split()) < 8:
        raise ValueError(f"Malformed candidate {line!r}")
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def describe(description: RTCSessionDescription) -> dict:
    return {"sdp": description.sdp, "type": description.type}


class RemoteMedia:
    """
    Incoming tracks of one peer, one per kind.

    Audio and video may show up in different negotiation rounds; a later
    track is merged in next to the existing ones rather than replacing them.
    """

    def __init__(self):
        self.tracks: Dict[str, MediaStreamTrack] = {}

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("audio")

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("video")

    def merge(self, track: MediaStreamTrack) -> bool:
        current = self.tracks.get(track.kind)
        if current is track:
            return False
        if current is not None and current.readyState != "ended":
            return False
        self.tracks[track.kind] = track

        @track.on("ended")
        def on_ended():
            if self.tracks.get(track.kind) is track:
                del self.tracks[track.kind]

        return True

    def clear(self) -> None:
        self.tracks.clear()


class PeerLink:
    """One media session with one remote connection."""

    def __init__(
        self,
        connection_id: str,
        room_id: str,
        send: SendFunc,
        ice_servers: Optional[List[dict]] = None,
        pc_factory: Optional[Callable[..., RTCPeerConnection]] = None,
        display_name: Optional[str] = None,
    ):
        self.connection_id = connection_id
        self.room_id = room_id
        self.display_name = display_name
        self._send = send

        factory = pc_factory or RTCPeerConnection
        self.pc = factory(configuration=build_configuration(ice_servers))

        self.state = PeerLinkState.NEW
        # Name of the suspension point the link is parked on, if any
        self.awaiting: Optional[str] = None
        self.remote_description_set = False
        self.pending_candidates: Deque[dict] = deque()
        self.remote_media = RemoteMedia()
        self.media: Optional[OutgoingMedia] = None
        self.offers_sent = 0
        self.connectivity_failures = 0

        self._renegotiation_pending = False
        self._failed = False
        self._pc_closed = False
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Future] = set()
        self._wire_events()

    def __repr__(self):
        return f"<PeerLink {self.connection_id} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is PeerLinkState.CLOSED

    # === Negotiation ===

    async def start_offer(self) -> bool:
        """Initiates the first negotiation. Only the newcomer of a room calls this."""
        async with self._lock:
            if self.state is not PeerLinkState.NEW:
                logger.debug(f"{self}: not offering, negotiation already started")
                return False
            return await self._send_offer()

    async def handle_offer(self, description) -> bool:
        async with self._lock:
            if self.closed:
                return False

            previous = self.state
            renegotiating = previous in (PeerLinkState.CONNECTED, PeerLinkState.RENEGOTIATING)
            self.state = PeerLinkState.RENEGOTIATING if renegotiating else PeerLinkState.OFFER_RECEIVED
            try:
                offer = parse_description(description, "offer")
                self.awaiting = "remote-description"
                await self.pc.setRemoteDescription(offer)
                await self._drain_candidates()
                self.awaiting = "local-description"
                answer = await self.pc.createAnswer()
                await self.pc.setLocalDescription(answer)
            except NEGOTIATION_ERRORS as e:
                logger.error(f"{self}: failed to answer offer: {e}")
                self._restore(previous)
                return False

            if self.closed:
                return False
            if not renegotiating:
                self.state = PeerLinkState.ANSWER_SENT
            self.awaiting = None
            await self._send("answer", {
                "targetConnectionId": self.connection_id,
                "roomId": self.room_id,
                "description": describe(self.pc.localDescription)
            })
            self._settle()
            return True

    async def handle_answer(self, description) -> bool:
        async with self._lock:
            if self.closed:
                return False
            if self.pc.signalingState != "have-local-offer":
                logger.warning(f"{self}: ignoring answer, no offer pending ({self.pc.signalingState})")
                return False

            previous = self.state
            try:
                answer = parse_description(description, "answer")
                self.awaiting = "remote-description"
                await self.pc.setRemoteDescription(answer)
                await self._drain_candidates()
            except NEGOTIATION_ERRORS as e:
                logger.error(f"{self}: failed to apply answer: {e}")
                self._restore(previous)
                return False

            self.awaiting = None
            self._settle()
            return True

    async def add_candidate(self, candidate) -> None:
        if self.closed:
            return
        if not self.remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug(f"{self}: queued ICE candidate ({len(self.pending_candidates)} pending)")
            return
        await self._apply_candidate(candidate)

    async def renegotiate(self) -> bool:
        """
        Sends a fresh offer for the current tracks. Deferred, not dropped,
        while another offer/answer exchange is still in flight.
        """
        if self.state in (PeerLinkState.NEW, PeerLinkState.CLOSED):
            # The first offer or answer will carry the current tracks
            return False

        async with self._lock:
            if self.closed:
                return False
            if self.pc.signalingState != "stable":
                self._renegotiation_pending = True
                self.awaiting = "stable"
                logger.debug(f"{self}: renegotiation deferred ({self.pc.signalingState})")
                return False
            return await self._send_offer()

    # === Outgoing media ===

    async def attach(self, media: OutgoingMedia) -> bool:
        """
        Points the outgoing slots at ``media``. Returns True when the change
        needs a renegotiation (a slot had to be created or re-created).
        """
        if self.closed:
            return False

        self.media = media
        needs_renegotiation = False
        for kind in MEDIA_KINDS:
            track = media.track(kind)
            transceiver = self._slot(kind)

            if transceiver is None:
                self._add_slot(kind, track)
                needs_renegotiation = True
                continue

            if transceiver.sender.track is track:
                continue

            try:
                transceiver.sender.replaceTrack(track)
            except NEGOTIATION_ERRORS as e:
                logger.warning(f"{self}: replacing {kind} track failed ({e}), re-adding it")
                await transceiver.stop()
                self._add_slot(kind, track)
                needs_renegotiation = True
                continue

            if track is not None and transceiver.direction in ("recvonly", "inactive"):
                transceiver.direction = "sendrecv"
                needs_renegotiation = True

        return needs_renegotiation

    async def update_source(self, media: OutgoingMedia) -> bool:
        if await self.attach(media):
            return await self.renegotiate()
        return False

    # === Teardown ===

    def abandon(self) -> None:
        """Synchronously stops all negotiation work on this link."""
        if self.closed:
            return
        self.state = PeerLinkState.CLOSED
        self.awaiting = None
        self._renegotiation_pending = False
        self.pending_candidates.clear()
        self.remote_media.clear()
        for task in list(self._tasks):
            task.cancel()
        logger.info(f"Closed link to {self.connection_id}")

    async def close(self) -> None:
        self.abandon()
        if self._pc_closed:
            return
        self._pc_closed = True
        await self.pc.close()

    # === Internals ===

    async def _send_offer(self) -> bool:
        previous = self.state
        renegotiating = previous in (PeerLinkState.CONNECTED, PeerLinkState.RENEGOTIATING)
        self.state = PeerLinkState.RENEGOTIATING if renegotiating else PeerLinkState.OFFER_SENT
        try:
            self.awaiting = "local-description"
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except NEGOTIATION_ERRORS as e:
            logger.error(f"{self}: failed to create offer: {e}")
            self._restore(previous)
            return False

        if self.closed:
            return False
        self.awaiting = "answer"
        self.offers_sent += 1
        await self._send("offer", {
            "targetConnectionId": self.connection_id,
            "roomId": self.room_id,
            "description": describe(self.pc.localDescription)
        })
        return True

    async def _drain_candidates(self) -> None:
        # Candidates arriving mid-drain land at the tail and keep their order
        while self.pending_candidates:
            await self._apply_candidate(self.pending_candidates.popleft())
        self.remote_description_set = True

    async def _apply_candidate(self, payload) -> None:
        try:
            candidate = parse_candidate(payload)
        except ValueError as e:
            logger.warning(f"{self}: dropping malformed ICE candidate: {e}")
            return
        if candidate is None:
            return
        try:
            await self.pc.addIceCandidate(candidate)
        except NEGOTIATION_ERRORS as e:
            logger.warning(f"{self}: ICE candidate rejected: {e}")

    def _restore(self, previous: PeerLinkState) -> None:
        if not self.closed:
            self.state = previous
            self.awaiting = None

    def _settle(self) -> None:
        """Moves to CONNECTED once signaling is stable and media can flow."""
        if self.state in (PeerLinkState.NEW, PeerLinkState.CLOSED, PeerLinkState.CONNECTED):
            return
        if self.awaiting is not None or self.pc.signalingState != "stable" or not self.remote_description_set:
            return
        if self.state is PeerLinkState.RENEGOTIATING or self._transport_up():
            logger.info(f"Link to {self.connection_id} connected")
            self.state = PeerLinkState.CONNECTED

    def _transport_up(self) -> bool:
        return self.pc.connectionState == "connected" or self.pc.iceConnectionState in ("connected", "completed")

    def _slot(self, kind: str):
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind and not transceiver.stopped:
                return transceiver
        return None

    def _add_slot(self, kind: str, track: Optional[MediaStreamTrack]) -> None:
        if track is not None:
            self.pc.addTrack(track)
        else:
            # Keeps an m-line for the kind so we can still receive it
            self.pc.addTransceiver(kind, direction="recvonly")

    def _on_connectivity(self, state: str) -> None:
        if self.closed:
            return
        if state in ("connected", "completed"):
            self._failed = False
            self._settle()
        elif state in ("new", "checking", "connecting"):
            self._failed = False
        elif state == "failed" and not self._failed:
            self._failed = True
            self._report_failure()

    def _report_failure(self) -> None:
        # aiortc gathers and starts ICE once per transport and has no restartIce(),
        # so a fresh offer would reuse the dead transport
        self.connectivity_failures += 1
        logger.warning(
            f"{self}: connectivity failed and aiortc cannot restart ICE on an existing connection, "
            f"keeping the link until the peer leaves"
        )

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{self}: background negotiation failed", exc_info=task.exception())

    def _wire_events(self) -> None:
        pc = self.pc

        @pc.on("track")
        def on_track(track):
            if self.remote_media.merge(track):
                logger.info(f"Received {track.kind} track from {self.connection_id}")

        @pc.on("signalingstatechange")
        def on_signalingstatechange():
            if pc.signalingState == "stable" and self._renegotiation_pending and not self.closed:
                self._renegotiation_pending = False
                self._spawn(self.renegotiate())

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            logger.debug(f"Connection state for {self.connection_id}: {pc.connectionState}")
            self._on_connectivity(pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            logger.debug(f"ICE connection state for {self.connection_id}: {pc.iceConnectionState}")
            self._on_connectivity(pc.iceConnectionState)
