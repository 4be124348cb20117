# skillswap_meet/services/gateway.py
import logging

from pydantic import ValidationError

from skillswap_meet.models.signaling import (
    AnswerMessage,
    IceCandidateMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    MeetingInviteMessage,
    OfferMessage,
    PingMessage,
    UserInfoMessage,
    inbound_message_adapter,
)

from .notifications import NotificationBridge
from .presence import PresenceRegistry
from .relay import SignalingRelay
from .rooms import RoomBroker

logger = logging.getLogger(__name__)

DEFAULT_INVITER_NAME = "Someone"


class SignalingGateway:
    """Validates inbound client messages and dispatches them to the services."""

    def __init__(self, registry: PresenceRegistry, broker: RoomBroker,
                 relay: SignalingRelay, notifications: NotificationBridge):
        self.registry = registry
        self.broker = broker
        self.relay = relay
        self.notifications = notifications

    def handle(self, connection_id: str, data) -> None:
        """Processes one decoded JSON message from a connection."""
        if not isinstance(data, dict) or not data.get("type"):
            self._send_error(connection_id, "Message must be an object with a 'type'")
            return

        try:
            message = inbound_message_adapter.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Invalid {data.get('type')!r} message from {connection_id}: {e.error_count()} errors")
            self._send_error(connection_id, f"Invalid {data.get('type')} message")
            return

        if isinstance(message, PingMessage):
            self.registry.send(connection_id, {"type": "pong"})

        elif isinstance(message, JoinRoomMessage):
            self.broker.join_room(connection_id, message.roomId)

        elif isinstance(message, LeaveRoomMessage):
            self.broker.leave_room(connection_id, message.roomId)

        elif isinstance(message, (OfferMessage, AnswerMessage)):
            # Forward the raw description so unknown fields survive
            self.relay.relay(connection_id, message.type, message.roomId,
                             message.targetConnectionId, data["description"])

        elif isinstance(message, IceCandidateMessage):
            self.relay.relay(connection_id, message.type, message.roomId,
                             message.targetConnectionId, data["candidate"])

        elif isinstance(message, UserInfoMessage):
            self.relay.relay_user_info(connection_id, message.roomId, message.displayName,
                                       message.targetConnectionId)

        elif isinstance(message, MeetingInviteMessage):
            inviter = message.inviterDisplayName or self._display_name(connection_id, message.roomId)
            self.notifications.notify_many(message.roomId, inviter, message.targetIdentities)

    def disconnect(self, connection_id: str) -> None:
        """Transport teardown: leave every room, then forget the connection."""
        self.broker.on_disconnect(connection_id)
        self.registry.on_disconnect(connection_id)

    def _display_name(self, connection_id: str, room_id: str) -> str:
        member = self.broker.member(room_id, connection_id)
        if member is not None and member.display_name:
            return member.display_name
        connection = self.registry.get(connection_id)
        if connection is not None:
            for other_room in connection.rooms:
                other = self.broker.member(other_room, connection_id)
                if other is not None and other.display_name:
                    return other.display_name
        return DEFAULT_INVITER_NAME

    def _send_error(self, connection_id: str, detail: str) -> bool:
        return self.registry.send(connection_id, {"type": "error", "detail": detail})
