# skillswap_meet/models/__init__.py
from .signaling import (
    IceCandidate,
    IceServersResponse,
    InboundMessage,
    MeetingInviteRequest,
    MeetingInviteResponse,
    SessionDescription,
    inbound_message_adapter,
)

__all__ = [
    "IceCandidate",
    "IceServersResponse",
    "InboundMessage",
    "MeetingInviteRequest",
    "MeetingInviteResponse",
    "SessionDescription",
    "inbound_message_adapter",
]
