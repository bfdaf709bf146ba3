from fastapi import APIRouter
from pydantic import BaseModel

from .. import economics as econ
from ..analyzer import analyze_match
from ..momentum import track_momentum
from ..rewards import calculate_match_rewards, calculate_session_rewards
from ..services.exceptions import ServiceError
from ..services.helpers import parse_sets, require_non_negative

router = APIRouter()


class SessionRewardRequest(BaseModel):
    session_type: str
    player_level: int
    opponent_level: int
    is_winner: bool = True
    stakes_amount: int = 0
    session_duration: int | None = 60
    player_skill: str | None = None
    opponent_skill: str | None = None
    intensity: str = "medium"


class MatchRequest(BaseModel):
    player_level: int = 1
    opponent_levels: list[int] = [1]
    sets: list[dict] = []
    current_set: int = 0
    is_doubles: bool = False
    player_skill: str | None = None
    opponent_skill: str | None = None
    is_winner: bool = True
    stakes_amount: int = 0
    session_duration: int | None = 60


@router.post("/rewards/session")
def preview_session_rewards(data: SessionRewardRequest):
    result = calculate_session_rewards(
        data.session_type,
        data.player_level,
        data.opponent_level,
        is_winner=data.is_winner,
        stakes_amount=require_non_negative("stakes_amount", data.stakes_amount),
        session_duration=data.session_duration,
        player_skill=data.player_skill,
        opponent_skill=data.opponent_skill,
        intensity=data.intensity,
    )
    return result.to_dict()


@router.post("/rewards/match")
def preview_match_rewards(data: MatchRequest):
    if not data.opponent_levels:
        raise ServiceError("At least one opponent level is required", 400)
    report = calculate_match_rewards(
        data.player_level,
        data.opponent_levels,
        sets=parse_sets(data.sets),
        current_set=data.current_set,
        is_doubles=data.is_doubles,
        player_skill=data.player_skill,
        opponent_skill=data.opponent_skill,
        is_winner=data.is_winner,
        stakes_amount=require_non_negative("stakes_amount", data.stakes_amount),
        session_duration=data.session_duration,
    )
    return report.to_dict()


@router.post("/matches/analysis")
def analyze(data: MatchRequest):
    sets = parse_sets(data.sets)
    analysis = analyze_match(sets, is_doubles=data.is_doubles)
    momentum = track_momentum(sets, data.current_set, analysis)
    return {"analysis": analysis.to_dict(), "momentum": momentum.to_dict()}


@router.get("/economics/stake")
def stake_preview(stake: int, player_level: int, opponent_level: int):
    require_non_negative("stake", stake)
    allowed = econ.can_players_stake(player_level, opponent_level)
    return {
        "allowed": allowed,
        "category": econ.get_level_difference_category(player_level, opponent_level),
        "adjusted_stake": econ.calculate_adjusted_stake(stake, player_level, opponent_level) if allowed else 0,
    }


@router.get("/economics/redemption")
def redemption_preview(service_type: str, total_value: float):
    try:
        max_tokens = econ.calculate_max_redemption_tokens(service_type, total_value)
    except ValueError as exc:
        raise ServiceError(str(exc), 400)
    return {"max_tokens": max_tokens, "usd_value": econ.tokens_to_usd(max_tokens)}


class ClubPool(BaseModel):
    allocated_tokens: int
    used_tokens: int
    overdraft_tokens: int = 0
    purchased_tokens: int = 0
    rollover_tokens: int = 0


@router.get("/economics/subscriptions/{user_type}/{tier}")
def subscription_tokens(user_type: str, tier: str):
    return {"tokens": econ.get_subscription_tokens(user_type, tier)}


@router.post("/economics/club_pool")
def club_pool_status(data: ClubPool):
    return econ.calculate_club_pool_status(
        data.allocated_tokens,
        data.used_tokens,
        overdraft_tokens=data.overdraft_tokens,
        purchased_tokens=data.purchased_tokens,
        rollover_tokens=data.rollover_tokens,
    )
