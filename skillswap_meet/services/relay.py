# skillswap_meet/services/relay.py
import logging
from typing import Optional

from .presence import PresenceRegistry
from .rooms import RoomBroker

logger = logging.getLogger(__name__)

# Message kind -> payload key forwarded untouched
RELAYED_KINDS = {
    "offer": "description",
    "answer": "description",
    "ice-candidate": "candidate",
}


class SignalingRelay:
    """
    Stateless router for peer-to-peer signaling messages.

    The only check performed is that the target is still a member of the room
    named in the message; anything else is forwarded without inspection.
    """

    def __init__(self, broker: RoomBroker, registry: PresenceRegistry):
        self.broker = broker
        self.registry = registry

    def relay(self, source_id: str, kind: str, room_id: str, target_id: str, body) -> bool:
        """Forwards an offer, answer or ICE candidate. Returns False if dropped."""
        key = RELAYED_KINDS.get(kind)
        if key is None:
            raise ValueError(f"{kind} is not a relayed message kind")

        if not self.broker.is_member(room_id, target_id):
            # Target left between the sender's room snapshot and this send
            logger.debug(f"Dropping {kind} from {source_id}: {target_id} is not in room {room_id}")
            return False

        return self.registry.send(target_id, {
            "type": kind,
            "roomId": room_id,
            "fromConnectionId": source_id,
            key: body
        })

    def relay_user_info(self, source_id: str, room_id: str, display_name: str,
                        target_id: Optional[str] = None) -> bool:
        """
        Publishes a display name. Without a target the name is stored and
        broadcast to the room; with a target only that member is told.
        """
        if target_id is None:
            return self.broker.set_user_info(source_id, room_id, display_name)

        if not self.broker.is_member(room_id, target_id):
            logger.debug(f"Dropping user-info from {source_id}: {target_id} is not in room {room_id}")
            return False

        return self.registry.send(target_id, {
            "type": "peer-info",
            "roomId": room_id,
            "connectionId": source_id,
            "displayName": display_name
        })
