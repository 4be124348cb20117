# skillswap_meet/client/__init__.py
from .invitations import Invitation, InvitationInbox
from .media import CaptureError, LocalStream, MediaProvider, OutgoingMedia, ToggleableTrack
from .peer_link import PeerLink, PeerLinkState, RemoteMedia
from .session import MeetingSession, ParticipantView
from .signaling import SignalingClient, fetch_ice_servers

__all__ = [
    "Invitation",
    "InvitationInbox",
    "CaptureError",
    "LocalStream",
    "MediaProvider",
    "OutgoingMedia",
    "ToggleableTrack",
    "PeerLink",
    "PeerLinkState",
    "RemoteMedia",
    "MeetingSession",
    "ParticipantView",
    "SignalingClient",
    "fetch_ice_servers",
]
