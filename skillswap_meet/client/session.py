# skillswap_meet/client/session.py
"""
One participant's presence in one meeting room.

The session owns the local capture, one PeerLink per remote participant and
the signaling handlers that route room events to those links. Offers follow
a fixed rule: whoever joins last offers to everyone already in the room,
existing members only answer.

Every link sends its own relay copy of the local tracks: an aiortc sender
pulls frames with `recv()`, and two senders reading one track would split
its frames between them. Muting acts on the shared source upstream of the
relay, so it reaches every copy at once.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from skillswap_meet.core.config import settings

from .invitations import InvitationInbox
from .media import CaptureError, LocalStream, MediaProvider, OutgoingMedia
from .peer_link import PeerLink

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "User"


@dataclass
class ParticipantView:
    connection_id: str
    display_name: str
    state: str
    audio: bool
    video: bool

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "displayName": self.display_name,
            "state": self.state,
            "audio": self.audio,
            "video": self.video
        }


class MeetingSession:
    def __init__(
        self,
        signaling,
        room_id: str,
        display_name: str = DEFAULT_DISPLAY_NAME,
        media_provider: Optional[MediaProvider] = None,
        ice_servers: Optional[List[dict]] = None,
        pc_factory: Optional[Callable] = None,
        inbox: Optional[InvitationInbox] = None,
        on_warning: Optional[Callable[[str], None]] = None,
    ):
        self.signaling = signaling
        self.room_id = room_id
        self.display_name = display_name
        self.media_provider = media_provider or MediaProvider()
        self.ice_servers = ice_servers
        self.pc_factory = pc_factory
        self.inbox = inbox
        self.on_warning = on_warning

        self.links: Dict[str, PeerLink] = {}
        self.display_names: Dict[str, str] = {}
        self.warnings: List[str] = []
        self.camera: Optional[LocalStream] = None
        self.screen: Optional[LocalStream] = None
        self.relay = MediaRelay()
        # (connection id, source track) -> the copy that link sends
        self._copies: Dict[Tuple[str, MediaStreamTrack], MediaStreamTrack] = {}

        self.joined = False
        self.left = False
        self._handlers = {
            "room-users": self._on_room_users,
            "user-joined": self._on_user_joined,
            "user-left": self._on_user_left,
            "offer": self._on_offer,
            "answer": self._on_answer,
            "ice-candidate": self._on_ice_candidate,
            "peer-info": self._on_peer_info,
        }
        self._tasks = set()

    async def __aenter__(self):
        await self.join()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.leave()

    # === Lifecycle ===

    async def join(self) -> None:
        if self.joined or self.left:
            return

        if self.inbox is not None:
            self.inbox.discard(self.room_id)
        if self.ice_servers is None:
            self.ice_servers = settings.WEBRTC_CONFIG.get_ice_servers()

        self.camera = await self._acquire_camera()

        for event, handler in self._handlers.items():
            self.signaling.on(event, handler)
        self.joined = True

        logger.info(f"Joining room {self.room_id} as {self.display_name}")
        await self.signaling.emit("join-room", {"roomId": self.room_id})
        await self.signaling.emit("user-info", {"roomId": self.room_id, "displayName": self.display_name})

    async def leave(self) -> None:
        """Closes every peer link, stops every local track and leaves the room."""
        if self.left:
            return
        self.left = True

        for event, handler in self._handlers.items():
            self.signaling.off(event, handler)
        for task in list(self._tasks):
            task.cancel()

        links = list(self.links.values())
        self.links.clear()
        self.display_names.clear()
        for link in links:
            link.abandon()

        for stream in (self.screen, self.camera):
            if stream is not None:
                stream.stop()
        self.screen = None
        self.camera = None
        self._drop_copies()

        results = await asyncio.gather(*(link.close() for link in links), return_exceptions=True)
        for link, result in zip(links, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing link to {link.connection_id}: {result}")

        if self.joined:
            await self.signaling.emit("leave-room", {"roomId": self.room_id})
        logger.info(f"Left room {self.room_id}")

    # === Local media controls ===

    @property
    def mic_on(self) -> bool:
        return bool(self.camera and self.camera.audio and self.camera.audio.enabled)

    @property
    def camera_on(self) -> bool:
        return bool(self.camera and self.camera.video and self.camera.video.enabled)

    @property
    def sharing_screen(self) -> bool:
        return self.screen is not None

    def toggle_mic(self) -> bool:
        """Mutes or unmutes the microphone in place. Returns the new state."""
        track = self.camera.audio if self.camera else None
        if track is None:
            self._warn("No microphone available")
            return False
        track.enabled = not track.enabled
        logger.info(f"Microphone {'on' if track.enabled else 'off'}")
        return track.enabled

    def toggle_camera(self) -> bool:
        if self.screen is not None:
            self._warn("Stop screen sharing before toggling the camera")
            return self.camera_on
        track = self.camera.video if self.camera else None
        if track is None:
            self._warn("No camera available")
            return False
        track.enabled = not track.enabled
        logger.info(f"Camera {'on' if track.enabled else 'off'}")
        return track.enabled

    async def start_screen_share(self) -> bool:
        if self.screen is not None:
            return True
        try:
            screen = await self.media_provider.open_screen()
        except CaptureError as e:
            self._warn(f"Screen sharing unavailable: {e}")
            return False

        self.screen = screen

        def on_ended():
            if self.screen is screen:
                logger.info("Screen capture ended, switching back to the camera")
                self._spawn(self.stop_screen_share())

        screen.video.on("ended", on_ended)
        await self._propagate()
        return True

    async def stop_screen_share(self) -> bool:
        screen = self.screen
        if screen is None:
            return False
        self.screen = None
        await self._propagate()
        # Senders may still be reading these copies; the relay ends them
        # after the screen source's final frame
        for key in [key for key in self._copies if key[1] in screen.tracks()]:
            del self._copies[key]
        screen.stop()
        return True

    def outgoing(self) -> OutgoingMedia:
        """What every link should be sending right now."""
        camera_audio = self.camera.audio if self.camera else None
        if self.screen is not None:
            return OutgoingMedia(audio=self.screen.audio or camera_audio, video=self.screen.video)
        return OutgoingMedia(audio=camera_audio, video=self.camera.video if self.camera else None)

    def outgoing_for(self, connection_id: str) -> OutgoingMedia:
        """The relay copies of :meth:`outgoing` owned by one link."""
        media = self.outgoing()
        return OutgoingMedia(
            audio=self._copy_for(connection_id, media.audio),
            video=self._copy_for(connection_id, media.video)
        )

    def participants(self) -> List[ParticipantView]:
        views = []
        for connection_id, link in self.links.items():
            views.append(ParticipantView(
                connection_id=connection_id,
                display_name=self.display_names.get(connection_id, DEFAULT_DISPLAY_NAME),
                state=link.state.value,
                audio=link.remote_media.audio is not None,
                video=link.remote_media.video is not None
            ))
        return views

    # === Signaling handlers ===

    def _in_room(self, message: dict) -> bool:
        return not self.left and message.get("roomId") == self.room_id

    def _is_self(self, connection_id: Optional[str]) -> bool:
        return not connection_id or connection_id == self.signaling.connection_id

    async def _on_room_users(self, message: dict):
        if not self._in_room(message):
            return
        peers = [peer for peer in message.get("peers", []) if not self._is_self(peer)]
        links = [await self._ensure_link(peer) for peer in peers]
        logger.info(f"Room {self.room_id} has {len(peers)} other participants, sending offers")

        results = await asyncio.gather(*(link.start_offer() for link in links), return_exceptions=True)
        for link, result in zip(links, results):
            if isinstance(result, Exception):
                logger.error(f"Offer to {link.connection_id} failed: {result}")

    async def _on_user_joined(self, message: dict):
        connection_id = message.get("connectionId")
        if not self._in_room(message) or self._is_self(connection_id):
            return
        # The newcomer sends the offer; we only get ready to answer
        await self._ensure_link(connection_id)
        await self.signaling.emit("user-info", {
            "roomId": self.room_id,
            "displayName": self.display_name,
            "targetConnectionId": connection_id
        })

    async def _on_user_left(self, message: dict):
        connection_id = message.get("connectionId")
        if not self._in_room(message):
            return
        link = self.links.pop(connection_id, None)
        self.display_names.pop(connection_id, None)
        if link is not None:
            await link.close()
        self._drop_copies(connection_id=connection_id)

    async def _on_offer(self, message: dict):
        connection_id = message.get("fromConnectionId")
        if not self._in_room(message) or self._is_self(connection_id):
            return
        link = await self._ensure_link(connection_id)
        await link.handle_offer(message.get("description"))

    async def _on_answer(self, message: dict):
        if not self._in_room(message):
            return
        link = self.links.get(message.get("fromConnectionId"))
        if link is None:
            logger.debug(f"Answer from unknown connection {message.get('fromConnectionId')}")
            return
        await link.handle_answer(message.get("description"))

    async def _on_ice_candidate(self, message: dict):
        connection_id = message.get("fromConnectionId")
        if not self._in_room(message) or self._is_self(connection_id):
            return
        link = await self._ensure_link(connection_id)
        await link.add_candidate(message.get("candidate"))

    def _on_peer_info(self, message: dict):
        connection_id = message.get("connectionId")
        if not self._in_room(message) or self._is_self(connection_id):
            return
        name = message.get("displayName") or DEFAULT_DISPLAY_NAME
        self.display_names[connection_id] = name
        link = self.links.get(connection_id)
        if link is not None:
            link.display_name = name

    # === Helpers ===

    async def _ensure_link(self, connection_id: str) -> PeerLink:
        link = self.links.get(connection_id)
        if link is not None:
            return link

        link = PeerLink(
            connection_id,
            self.room_id,
            self.signaling.emit,
            ice_servers=self.ice_servers,
            pc_factory=self.pc_factory,
            display_name=self.display_names.get(connection_id)
        )
        self.links[connection_id] = link
        await link.attach(self.outgoing_for(connection_id))
        logger.debug(f"Created link to {connection_id}")
        return link

    async def _acquire_camera(self) -> Optional[LocalStream]:
        try:
            return await self.media_provider.open_camera(audio=True, video=True)
        except CaptureError as e:
            reason = "busy" if e.busy else "unavailable"
            self._warn(f"Camera {reason}, joining with audio only ({e})")
        try:
            return await self.media_provider.open_camera(audio=True, video=False)
        except CaptureError as e:
            self._warn(f"Microphone unavailable, joining receive-only ({e})")
        return None

    def _copy_for(self, connection_id: str, source: Optional[MediaStreamTrack]) -> Optional[MediaStreamTrack]:
        # One copy per (link, source): swapping back to a source finds the sender's old track
        if source is None:
            return None
        key = (connection_id, source)
        copy = self._copies.get(key)
        if copy is None:
            copy = self.relay.subscribe(source, buffered=False)
            self._copies[key] = copy
        return copy

    def _drop_copies(self, connection_id: Optional[str] = None) -> None:
        for key in list(self._copies):
            if connection_id is None or key[0] == connection_id:
                self._copies.pop(key).stop()

    async def _propagate(self) -> None:
        links = list(self.links.values())
        results = await asyncio.gather(
            *(link.update_source(self.outgoing_for(link.connection_id)) for link in links),
            return_exceptions=True
        )
        for link, result in zip(links, results):
            if isinstance(result, Exception):
                logger.error(f"Could not update media for {link.connection_id}: {result}")

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)
        if self.on_warning is not None:
            self.on_warning(message)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
