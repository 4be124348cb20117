# skillswap_meet/services/notifications.py
import logging
from typing import Dict, Iterable

from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class NotificationBridge:
    """Delivers meeting invitations to an identity's live connections."""

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry

    def notify_meeting_invite(self, room_id: str, inviter_display_name: str, target_identity: str) -> int:
        """
        Fire-and-forget: every current connection of the target gets the invite,
        whatever room it is in. Nothing is queued for offline identities.
        """
        message = {
            "type": "meeting-invite",
            "roomId": room_id,
            "inviterDisplayName": inviter_display_name
        }
        delivered = 0
        for connection in self.registry.connections_for(target_identity):
            connection.send(message)
            delivered += 1

        if delivered:
            logger.info(f"Meeting invite for room {room_id} delivered to {target_identity} ({delivered} connections)")
        else:
            logger.debug(f"Meeting invite for room {room_id} dropped: {target_identity} is offline")
        return delivered

    def notify_many(self, room_id: str, inviter_display_name: str, targets: Iterable[str]) -> Dict[str, int]:
        return {
            target: self.notify_meeting_invite(room_id, inviter_display_name, target)
            for target in dict.fromkeys(targets)
        }
