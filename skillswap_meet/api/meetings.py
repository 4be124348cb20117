# skillswap_meet/api/meetings.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from skillswap_meet.core.config import is_valid_id
from skillswap_meet.core.security import require_identity
from skillswap_meet.models.signaling import MeetingInviteRequest, MeetingInviteResponse
from skillswap_meet.services import SignalingServices

from .signaling import get_services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/meetings/{room_id}/invite", response_model=MeetingInviteResponse)
async def invite_to_meeting(
    room_id: str,
    request: MeetingInviteRequest,
    identity: str = Depends(require_identity),
    services: SignalingServices = Depends(get_services),
) -> MeetingInviteResponse:
    """
    Tells the invited users that a meeting started.
    Only users with an open connection are reached; nothing is stored.
    """
    if not is_valid_id(room_id):
        raise HTTPException(status_code=400, detail="Invalid room id")

    logger.info(f"{identity} invites {len(request.targetIdentities)} users to room {room_id}")
    delivered = services.notifications.notify_many(
        room_id, request.inviterDisplayName, request.targetIdentities
    )
    return MeetingInviteResponse(roomId=room_id, delivered=delivered)
