from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .. import storage
from ..models import REGULAR, TOKEN_TYPES
from ..services.exceptions import ServiceError
from ..services.invitations import InvitationSettlement
from ..services.state import get_settlement

router = APIRouter()


class TokenGrant(BaseModel):
    amount: int
    token_type: str = REGULAR
    reason: str = "purchase"


@router.get("/players/{player_id}/balance")
def get_balance(player_id: str):
    return storage.get_balance(player_id).to_dict()


@router.post("/players/{player_id}/tokens")
def grant_tokens(player_id: str, data: TokenGrant):
    if data.amount <= 0:
        raise ServiceError("Amount must be positive", 400)
    if data.token_type not in TOKEN_TYPES:
        raise ServiceError(f"Unknown token type '{data.token_type}'", 400)
    balance = storage.credit_tokens(player_id, data.token_type, data.amount, data.reason)
    return balance.to_dict()


@router.get("/players/{player_id}/transactions")
def list_transactions(player_id: str):
    return storage.list_token_transactions(player_id)


@router.get("/players/{player_id}/invitations")
def resync_invitations(player_id: str, settlement: InvitationSettlement = Depends(get_settlement)):
    """Return the player's invitations after expiring overdue ones."""
    return [inv.to_dict() for inv in settlement.resync(player_id)]
