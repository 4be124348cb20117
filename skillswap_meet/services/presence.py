# skillswap_meet/services/presence.py
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One authenticated transport connection (one browser tab, one client)."""
    connection_id: str
    identity: str
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def send(self, message: dict) -> None:
        # The writer task owning the socket drains this in FIFO order
        self.outbox.put_nowait(message)


class PresenceRegistry:
    """
    Process-wide map of authenticated identities to their live connections.
    Room membership is recorded on each Connection by the RoomBroker.
    """

    def __init__(self):
        # {connection_id: Connection}
        self._connections: Dict[str, Connection] = {}
        # {identity: {connection_id}}
        self._by_identity: Dict[str, Set[str]] = {}

    def on_connect(self, identity: str) -> str:
        """Registers a new connection for an already authenticated identity."""
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = Connection(connection_id=connection_id, identity=identity)
        self._by_identity.setdefault(identity, set()).add(connection_id)
        logger.info(f"Connection {connection_id} registered for {identity}")
        return connection_id

    def on_disconnect(self, connection_id: str) -> Optional[Connection]:
        """Unregisters a connection. Unknown ids are ignored."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        siblings = self._by_identity.get(connection.identity)
        if siblings is not None:
            siblings.discard(connection_id)
            if not siblings:
                del self._by_identity[connection.identity]

        logger.info(f"Connection {connection_id} of {connection.identity} unregistered")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections_for(self, identity: str) -> List[Connection]:
        """All live connections of one identity (several tabs are allowed)."""
        return [self._connections[cid] for cid in self._by_identity.get(identity, ())]

    def send(self, connection_id: str, message: dict) -> bool:
        """Queues a message for one connection; a vanished connection is a no-op."""
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug(f"Dropping {message.get('type')} for vanished connection {connection_id}")
            return False
        connection.send(message)
        return True

    def connection_count(self) -> int:
        return len(self._connections)

    def identity_count(self) -> int:
        return len(self._by_identity)

    def clear(self) -> None:
        self._connections.clear()
        self._by_identity.clear()
