from __future__ import annotations

import datetime
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional

# Invitation lifecycle. ``pending`` is the only non-terminal status.
PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
EXPIRED = "expired"
CANCELED = "canceled"

# Invitation categories
MATCH = "match"
SOCIAL_PLAY = "social_play"
INVITATION_CATEGORIES = (MATCH, SOCIAL_PLAY)

# Token types held in a balance
REGULAR = "regular"
PREMIUM = "premium"
TOKEN_TYPES = (REGULAR, PREMIUM)


@dataclass
class TokenBalance:
    """A single player's token holdings."""

    player_id: str
    regular_tokens: int = 0
    premium_tokens: int = 0
    lifetime_earned: int = 0
    # optimistic concurrency counter, bumped on every mutation
    version: int = 0

    def amount(self, token_type: str) -> int:
        if token_type == PREMIUM:
            return self.premium_tokens
        return self.regular_tokens

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SetScore:
    player_score: int
    opponent_score: int
    completed: bool = False

    @property
    def difference(self) -> int:
        return self.player_score - self.opponent_score

    @property
    def won(self) -> bool:
        return self.player_score > self.opponent_score

    def flipped(self) -> "SetScore":
        """Return the same set seen from the opponent's side."""
        return SetScore(self.opponent_score, self.player_score, self.completed)

    @classmethod
    def from_value(cls, value) -> "SetScore":
        """Build a set from a ``SetScore``, a mapping or a 3-tuple.

        Mappings may use ``playerScore``/``opponentScore`` or the snake case
        names. Scores may be strings; an empty string counts as ``0``.
        """
        if isinstance(value, SetScore):
            return value
        if isinstance(value, dict):
            player = value.get("player_score", value.get("playerScore", 0))
            opponent = value.get("opponent_score", value.get("opponentScore", 0))
            completed = value.get("completed", False)
        else:
            player, opponent, completed = value
        return cls(_to_games(player), _to_games(opponent), bool(completed))


def _to_games(value) -> int:
    if value is None or value == "":
        return 0
    return int(value)


@dataclass(frozen=True)
class TennisAnalysis:
    break_count: int = 0
    is_comeback: bool = False
    is_final_set: bool = False
    clutch_bonus: bool = False
    double_break_bonus: bool = False
    momentum_shift: str = "neutral"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MomentumFactors:
    score_difference: float = 0.0
    recent_performance: int = 0
    set_progress: int = 0
    match_context: int = 0


@dataclass(frozen=True)
class MomentumState:
    score: int
    trend: str
    intensity: str
    description: str
    confidence: float
    factors: MomentumFactors = field(default_factory=MomentumFactors)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SessionRewardResult:
    win_xp: int
    win_hp: int
    win_tokens: int
    lose_xp: int
    lose_hp: int
    lose_tokens: int
    difficulty_multiplier: float
    level_difference: int
    tennis_multiplier: float = 1.0
    rake_tokens: int = 0
    # True when the baseline table was used instead of the computed values
    fallback: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Invitation:
    inviter_id: str
    invitee_id: Optional[str]
    category: str = MATCH
    id: str | None = None
    invitee_name: str | None = None
    # singles or doubles
    invitation_type: str = "singles"
    status: str = PENDING
    message: str | None = None
    stakes_tokens: int = 0
    stakes_premium_tokens: int = 0
    is_challenge: bool = False
    session_data: Dict[str, object] = field(default_factory=dict)
    session_id: str | None = None
    created_at: datetime.datetime | None = None
    expires_at: datetime.datetime | None = None
    responded_at: datetime.datetime | None = None
    # amounts actually held in escrow for each side
    inviter_escrow: int = 0
    inviter_premium_escrow: int = 0
    invitee_escrow: int = 0
    invitee_premium_escrow: int = 0
    settled_at: datetime.datetime | None = None
    winner_id: str | None = None

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def effective_status(self, now: datetime.datetime) -> str:
        """Return the status with read-time expiry applied."""
        if self.status == PENDING and self.is_expired(now):
            return EXPIRED
        return self.status

    @property
    def has_stakes(self) -> bool:
        return self.is_challenge and (self.stakes_tokens > 0 or self.stakes_premium_tokens > 0)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("created_at", "expires_at", "responded_at", "settled_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class SettlementResult:
    invitation_id: str
    winner_id: str
    loser_id: str
    winner_rewards: SessionRewardResult
    loser_rewards: SessionRewardResult
    # tokens credited to each side, escrow returns included
    winner_payout: int = 0
    loser_payout: int = 0
    winner_premium_payout: int = 0
    loser_premium_payout: int = 0
    rake_tokens: int = 0
    premium_rake_tokens: int = 0

    def to_dict(self) -> dict:
        return asdict(self)
