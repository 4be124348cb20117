# skillswap_meet/models/signaling.py
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from skillswap_meet.core.config import VALID_ID_PATTERN

IdStr = Annotated[str, Field(pattern=VALID_ID_PATTERN.pattern)]


class SessionDescription(BaseModel):
    """SDP offer or answer, relayed verbatim"""
    model_config = ConfigDict(extra="allow")

    sdp: str
    type: Literal["offer", "answer", "pranswer", "rollback"]


class IceCandidate(BaseModel):
    """Trickled ICE candidate in RTCIceCandidateInit form"""
    model_config = ConfigDict(extra="allow")

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


# === Client -> server messages ===

class JoinRoomMessage(BaseModel):
    type: Literal["join-room"]
    roomId: IdStr


class LeaveRoomMessage(BaseModel):
    type: Literal["leave-room"]
    roomId: IdStr


class OfferMessage(BaseModel):
    type: Literal["offer"]
    roomId: IdStr
    targetConnectionId: IdStr
    description: SessionDescription


class AnswerMessage(BaseModel):
    type: Literal["answer"]
    roomId: IdStr
    targetConnectionId: IdStr
    description: SessionDescription


class IceCandidateMessage(BaseModel):
    type: Literal["ice-candidate"]
    roomId: IdStr
    targetConnectionId: IdStr
    candidate: IceCandidate


class UserInfoMessage(BaseModel):
    type: Literal["user-info"]
    roomId: IdStr
    displayName: str = Field(..., max_length=100)
    targetConnectionId: Optional[IdStr] = None


class MeetingInviteMessage(BaseModel):
    type: Literal["meeting-invite"]
    roomId: IdStr
    targetIdentities: List[str] = Field(..., min_length=1)
    inviterDisplayName: Optional[str] = Field(None, max_length=100)


class PingMessage(BaseModel):
    type: Literal["ping"]


InboundMessage = Annotated[
    Union[
        JoinRoomMessage,
        LeaveRoomMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        UserInfoMessage,
        MeetingInviteMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

inbound_message_adapter = TypeAdapter(InboundMessage)


# === REST ===

class MeetingInviteRequest(BaseModel):
    """
    Body of POST /api/meetings/{room_id}/invite.

    Example:
        {
            "targetIdentities": ["65f1c0ffee", "65f1c0ffef"],
            "inviterDisplayName": "Alice"
        }
    """
    targetIdentities: List[str] = Field(..., min_length=1, description="Identities to notify")
    inviterDisplayName: str = Field(..., min_length=1, max_length=100, description="Shown to the invitee")

    model_config = ConfigDict(extra="forbid")


class MeetingInviteResponse(BaseModel):
    roomId: str
    delivered: dict = Field(..., description="identity -> number of connections reached")


class IceServersResponse(BaseModel):
    iceServers: List[dict]
