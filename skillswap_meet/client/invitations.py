# skillswap_meet/client/invitations.py
"""
Meeting invitations received during the current session.

Nothing here is persisted: a restarted client starts with an empty inbox.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Invitation:
    room_id: str
    inviter_display_name: str
    received_at: float = field(default_factory=time.time)


class InvitationInbox:
    """Keeps the newest invitation per room until it is accepted or dismissed."""

    def __init__(self, signaling=None):
        self.signaling = signaling
        self._invitations: Dict[str, Invitation] = {}
        if signaling is not None:
            signaling.on("meeting-invite", self.receive)

    def receive(self, message: dict) -> Optional[Invitation]:
        room_id = message.get("roomId")
        if not room_id:
            return None
        invitation = Invitation(room_id, message.get("inviterDisplayName") or "Someone")
        self._invitations[room_id] = invitation
        logger.info(f"{invitation.inviter_display_name} invited you to room {room_id}")
        return invitation

    def pending(self) -> List[Invitation]:
        return sorted(self._invitations.values(), key=lambda invitation: invitation.received_at)

    def dismiss(self, room_id: str) -> bool:
        return self._invitations.pop(room_id, None) is not None

    # Joining a room by any route clears its invitation
    discard = dismiss

    def accept(self, room_id: str) -> Invitation:
        """Removes the invitation and returns it; the caller then joins the room."""
        try:
            return self._invitations.pop(room_id)
        except KeyError:
            raise KeyError(f"No pending invitation for room {room_id}")

    async def invite(self, room_id: str, targets: List[str], inviter_display_name: Optional[str] = None) -> bool:
        if self.signaling is None:
            raise RuntimeError("Inbox is not connected to a signaling client")
        payload = {"roomId": room_id, "targetIdentities": list(targets)}
        if inviter_display_name:
            payload["inviterDisplayName"] = inviter_display_name
        return await self.signaling.emit("meeting-invite", payload)

    def __len__(self):
        return len(self._invitations)

    def __contains__(self, room_id):
        return room_id in self._invitations
