import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..models import MATCH
from ..services.helpers import parse_sets
from ..services.invitations import InvitationSettlement
from ..services.state import get_settlement

router = APIRouter()


class InvitationCreate(BaseModel):
    inviter_id: str
    invitee_id: str | None = None
    invitee_name: str | None = None
    category: str = MATCH
    invitation_type: str = "singles"
    message: str | None = None
    stakes_tokens: int = 0
    stakes_premium_tokens: int = 0
    is_challenge: bool = False
    session_data: dict = {}
    expires_in_hours: int | None = None
    inviter_level: int | None = None
    invitee_level: int | None = None


class InvitationResponse(BaseModel):
    player_id: str


class SettleRequest(BaseModel):
    winner_id: str
    sets: list[dict] = []
    winner_level: int = 1
    loser_level: int = 1
    session_duration: int | None = 60
    winner_skill: str | None = None
    loser_skill: str | None = None


@router.post("/invitations")
def create_invitation(data: InvitationCreate, settlement: InvitationSettlement = Depends(get_settlement)):
    expires_in = None
    if data.expires_in_hours:
        expires_in = datetime.timedelta(hours=data.expires_in_hours)
    invitation = settlement.create_invitation(
        data.inviter_id,
        data.invitee_id,
        category=data.category,
        invitation_type=data.invitation_type,
        stakes_tokens=data.stakes_tokens,
        stakes_premium_tokens=data.stakes_premium_tokens,
        is_challenge=data.is_challenge,
        session_data=data.session_data,
        message=data.message,
        invitee_name=data.invitee_name,
        expires_in=expires_in,
        inviter_level=data.inviter_level,
        invitee_level=data.invitee_level,
    )
    return invitation.to_dict()


@router.get("/invitations/{invitation_id}")
def get_invitation(invitation_id: str, settlement: InvitationSettlement = Depends(get_settlement)):
    return settlement.get_invitation(invitation_id).to_dict()


@router.post("/invitations/{invitation_id}/accept")
def accept_invitation(
    invitation_id: str,
    data: InvitationResponse,
    settlement: InvitationSettlement = Depends(get_settlement),
):
    return settlement.accept(invitation_id, data.player_id).to_dict()


@router.post("/invitations/{invitation_id}/decline")
def decline_invitation(
    invitation_id: str,
    data: InvitationResponse,
    settlement: InvitationSettlement = Depends(get_settlement),
):
    return settlement.decline(invitation_id, data.player_id).to_dict()


@router.post("/invitations/{invitation_id}/cancel")
def cancel_invitation(
    invitation_id: str,
    data: InvitationResponse,
    settlement: InvitationSettlement = Depends(get_settlement),
):
    return settlement.cancel(invitation_id, data.player_id).to_dict()


@router.post("/invitations/{invitation_id}/expire")
def expire_invitation(invitation_id: str, settlement: InvitationSettlement = Depends(get_settlement)):
    return settlement.expire(invitation_id).to_dict()


@router.post("/invitations/{invitation_id}/settle")
def settle_invitation(
    invitation_id: str,
    data: SettleRequest,
    settlement: InvitationSettlement = Depends(get_settlement),
):
    result = settlement.settle(
        invitation_id,
        data.winner_id,
        sets=parse_sets(data.sets),
        winner_level=data.winner_level,
        loser_level=data.loser_level,
        session_duration=data.session_duration,
        winner_skill=data.winner_skill,
        loser_skill=data.loser_skill,
    )
    return result.to_dict()
