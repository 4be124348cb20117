# skillswap_meet/services/__init__.py
import logging
from dataclasses import dataclass
from typing import Optional

from skillswap_meet.core.config import Settings, settings

from .gateway import SignalingGateway
from .notifications import NotificationBridge
from .presence import Connection, PresenceRegistry
from .relay import SignalingRelay
from .rooms import Member, RoomBroker

logger = logging.getLogger(__name__)


@dataclass
class SignalingServices:
    """Owned server state; created on application startup, cleared on shutdown."""
    registry: PresenceRegistry
    broker: RoomBroker
    relay: SignalingRelay
    notifications: NotificationBridge
    gateway: SignalingGateway

    @classmethod
    def create(cls, config: Optional[Settings] = None) -> "SignalingServices":
        config = config or settings
        registry = PresenceRegistry()
        broker = RoomBroker(registry, rebroadcast_duplicate_joins=config.REBROADCAST_DUPLICATE_JOINS)
        relay = SignalingRelay(broker, registry)
        notifications = NotificationBridge(registry)
        gateway = SignalingGateway(registry, broker, relay, notifications)
        return cls(registry=registry, broker=broker, relay=relay,
                   notifications=notifications, gateway=gateway)

    def shutdown(self) -> None:
        logger.info(
            f"Shutting down signaling: {self.broker.room_count()} rooms, "
            f"{self.registry.connection_count()} connections"
        )
        self.broker.clear()
        self.registry.clear()


__all__ = [
    "Connection",
    "Member",
    "NotificationBridge",
    "PresenceRegistry",
    "RoomBroker",
    "SignalingGateway",
    "SignalingRelay",
    "SignalingServices",
]
