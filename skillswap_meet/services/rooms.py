# skillswap_meet/services/rooms.py
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


@dataclass
class Member:
    connection_id: str
    identity: str
    display_name: Optional[str] = None


class RoomBroker:
    """
    In-memory room membership for the signaling server.

    Rooms are created on first join and removed as soon as the last member
    leaves. Every operation is a synchronous map mutation followed by queued
    notifications, so operations never interleave on the event loop.
    """

    def __init__(self, registry: PresenceRegistry, rebroadcast_duplicate_joins: bool = True):
        self.registry = registry
        self.rebroadcast_duplicate_joins = rebroadcast_duplicate_joins
        # {room_id: {connection_id: Member}}
        self._rooms: Dict[str, Dict[str, Member]] = {}

    def join_room(self, connection_id: str, room_id: str) -> List[str]:
        """
        Adds a connection to a room and returns the other members' ids.

        The caller receives ``room-users`` (plus ``peer-info`` for every member
        that already published a display name); every other member receives
        ``user-joined``.
        """
        connection = self.registry.get(connection_id)
        if connection is None:
            return []

        members = self._rooms.setdefault(room_id, {})
        duplicate = connection_id in members
        if not duplicate:
            members[connection_id] = Member(connection_id=connection_id, identity=connection.identity)
            connection.rooms.add(room_id)
            logger.info(f"Connection {connection_id} joined room {room_id} ({len(members)} members)")
        else:
            logger.debug(f"Connection {connection_id} re-joined room {room_id}")

        others = [member for cid, member in members.items() if cid != connection_id]
        peers = [member.connection_id for member in others]

        self.registry.send(connection_id, {"type": "room-users", "roomId": room_id, "peers": peers})
        for member in others:
            if member.display_name:
                self.registry.send(connection_id, {
                    "type": "peer-info",
                    "roomId": room_id,
                    "connectionId": member.connection_id,
                    "displayName": member.display_name
                })

        if not duplicate or self.rebroadcast_duplicate_joins:
            self.broadcast(room_id, {
                "type": "user-joined",
                "roomId": room_id,
                "connectionId": connection_id
            }, exclude=connection_id)
        return peers

    def set_user_info(self, connection_id: str, room_id: str, display_name: str) -> bool:
        """Stores a display name and announces it to the rest of the room."""
        member = self._rooms.get(room_id, {}).get(connection_id)
        if member is None:
            return False
        member.display_name = display_name
        self.broadcast(room_id, {
            "type": "peer-info",
            "roomId": room_id,
            "connectionId": connection_id,
            "displayName": display_name
        }, exclude=connection_id)
        return True

    def leave_room(self, connection_id: str, room_id: str) -> bool:
        """Removes a connection from exactly one room."""
        members = self._rooms.get(room_id)
        if not members or connection_id not in members:
            return False

        del members[connection_id]
        connection = self.registry.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room_id)
        logger.info(f"Connection {connection_id} left room {room_id}")

        if not members:
            del self._rooms[room_id]
            logger.debug(f"Room {room_id} is empty and was removed")
            return True

        self.broadcast(room_id, {"type": "user-left", "roomId": room_id, "connectionId": connection_id})
        return True

    def on_disconnect(self, connection_id: str) -> List[str]:
        """Leaves every room the connection occupies. Returns the rooms left."""
        left = [room_id for room_id, members in self._rooms.items() if connection_id in members]
        for room_id in left:
            self.leave_room(connection_id, room_id)
        return left

    def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Queues a message for every member of a room. Returns recipients."""
        sent = 0
        for cid in list(self._rooms.get(room_id, {})):
            if cid == exclude:
                continue
            if self.registry.send(cid, message):
                sent += 1
        return sent

    def members(self, room_id: str) -> List[Member]:
        return list(self._rooms.get(room_id, {}).values())

    def member(self, room_id: str, connection_id: str) -> Optional[Member]:
        return self._rooms.get(room_id, {}).get(connection_id)

    def is_member(self, room_id: str, connection_id: str) -> bool:
        return connection_id in self._rooms.get(room_id, {})

    def room_count(self) -> int:
        return len(self._rooms)

    def member_count(self) -> int:
        return sum(len(members) for members in self._rooms.values())

    def clear(self) -> None:
        self._rooms.clear()
