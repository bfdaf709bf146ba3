"""Game economics: reward tables, rake, stake balancing and token value."""

from __future__ import annotations

from typing import Dict

SOCIAL = "social"
COMPETITIVE = "competitive"
TRAINING = "training"
SESSION_TYPES = (SOCIAL, COMPETITIVE, TRAINING)
# ``match`` sessions use the competitive reward math
SESSION_TYPE_ALIASES = {"match": COMPETITIVE, "challenge": COMPETITIVE, "social_play": SOCIAL}

# XP base ranges by session type; rewards use the floored midpoint so the
# result is reproducible.
XP_RANGES = {
    SOCIAL: (10, 20),
    COMPETITIVE: (20, 40),
    TRAINING: (15, 30),
}
BASE_XP = {kind: (lo + hi) // 2 for kind, (lo, hi) in XP_RANGES.items()}

# HP cost ranges by session type
HP_LOSS = {
    SOCIAL: (2, 5),
    COMPETITIVE: (5, 10),
    TRAINING: (3, 8),
}
BASE_HP_COST = {kind: (lo + hi) // 2 for kind, (lo, hi) in HP_LOSS.items()}
INTENSITY_MULTIPLIERS = {
    "low": 0.7,
    "medium": 1.0,
    "high": 1.3,
    "extreme": 1.6,
}
WIN_HP_BONUS = 10
MIN_HP_COST = 1
MAX_DURATION_MULTIPLIER = 2.0
# Playing a lower level opponent costs less HP
HP_REDUCTION_MODERATE = 1  # 3+ levels lower
HP_REDUCTION_LARGE = 2  # 6+ levels lower

# Level difference multiplier
LEVEL_STEP_HIGHER = 0.15
LEVEL_STEP_LOWER = 0.10
MIN_DIFFICULTY = 0.5
MAX_DIFFICULTY = 3.0

# Skill tiers, lowest first
SKILL_TIERS = ("beginner", "intermediate", "advanced", "professional")
SKILL_STEP_HIGHER = 0.20
SKILL_STEP_LOWER = 0.15
MIN_SKILL_MULTIPLIER = 0.6

# Tennis bonus multiplier
DOUBLE_BREAK_BONUS = 0.5
COMEBACK_BONUS = 0.3
CLUTCH_FACTOR = 2.0
MAX_TENNIS_MULTIPLIER = 4.0

LOSER_XP_PERCENT = 70

# Token distribution. Percentages keep the split in integer arithmetic.
RAKE_PERCENT = 10
WINNER_SHARE_PERCENT = 100 - RAKE_PERCENT
SOCIAL_MAX_STAKE = 20
BASE_TOKENS = {
    COMPETITIVE: 30,
    SOCIAL: 15,
}
TRAINING_COACH_FEE = 12
PARTICIPATION_PERCENT = 30

# Stake balancing between players of different levels
MAX_STAKE_LEVEL_DIFFERENCE = 10
STAKE_ADJUSTMENTS = {
    "equal_levels": 1.0,  # 0-2 levels apart
    "moderate_diff": 0.75,  # 3-4 levels apart
    "large_diff": 0.5,  # 5+ levels apart
}

# Token value and redemption
TOKEN_VALUE_USD = 0.007
MAX_REDEMPTION_PERCENTAGES = {
    "court_booking": 30,
    "coaching_lesson": 25,
    "group_clinic": 20,
    "equipment_rental": 50,
    "club_merchandise": 15,
}

# Monthly subscription token allocations
SUBSCRIPTION_TOKENS: Dict[str, Dict[str, int]] = {
    "player": {"free": 0, "basic": 100, "premium": 250, "pro": 500},
    "coach": {"free": 50, "standard": 200, "professional": 500, "elite": 1000},
    "club": {"community": 5000, "core": 50000, "plus": 150000, "pro": 300000},
}


def normalize_session_type(session_type: str) -> str:
    """Return the reward category for ``session_type``."""
    key = session_type.lower()
    key = SESSION_TYPE_ALIASES.get(key, key)
    if key not in SESSION_TYPES:
        raise ValueError(f"Unknown session type '{session_type}'")
    return key


def get_level_difference_category(player_level: int, opponent_level: int) -> str:
    level_diff = abs(player_level - opponent_level)
    if level_diff <= 2:
        return "equal_levels"
    if level_diff <= 4:
        return "moderate_diff"
    return "large_diff"


def can_players_stake(player_level: int, opponent_level: int) -> bool:
    """Return whether two players are close enough in level to stake."""
    return abs(player_level - opponent_level) <= MAX_STAKE_LEVEL_DIFFERENCE


def calculate_adjusted_stake(stake: int, player_level: int, opponent_level: int) -> int:
    """Scale ``stake`` down as the level gap grows; ``0`` if staking is barred."""
    if not can_players_stake(player_level, opponent_level):
        return 0
    category = get_level_difference_category(player_level, opponent_level)
    return int(stake * STAKE_ADJUSTMENTS[category])


def calculate_competitive_tokens(stake: int, is_winner: bool) -> tuple[int, int]:
    """Split a competitive stake into ``(player_tokens, rake_tokens)``.

    The rake is whatever the winner share leaves behind, so the two parts
    always add up to ``stake``.
    """
    share = stake * WINNER_SHARE_PERCENT // 100
    rake = stake - share
    return (share if is_winner else 0), rake


def calculate_social_tokens(stake: int) -> tuple[int, int, int]:
    """Return ``(player_tokens, rake_tokens, capped_stake)`` for social play."""
    capped = min(stake, SOCIAL_MAX_STAKE)
    share, rake = calculate_competitive_tokens(capped, True)
    return share, rake, capped


def participation_tokens(session_type: str) -> int:
    """Tokens a loser receives for showing up."""
    kind = normalize_session_type(session_type)
    if kind == TRAINING:
        return TRAINING_COACH_FEE
    return BASE_TOKENS[kind] * PARTICIPATION_PERCENT // 100


def tokens_to_usd(tokens: int) -> float:
    return round(tokens * TOKEN_VALUE_USD, 4)


def calculate_max_redemption_tokens(service_type: str, total_service_value: float) -> int:
    """Return the most tokens that may be redeemed against a service price."""
    if service_type not in MAX_REDEMPTION_PERCENTAGES:
        raise ValueError(f"Unknown service type '{service_type}'")
    max_value = total_service_value * MAX_REDEMPTION_PERCENTAGES[service_type] / 100
    # round before flooring so float noise doesn't cost a token
    return int(round(max_value / TOKEN_VALUE_USD, 6))


def get_subscription_tokens(user_type: str, tier: str) -> int:
    return SUBSCRIPTION_TOKENS.get(user_type, {}).get(tier, 0)


def calculate_club_pool_status(
    allocated_tokens: int,
    used_tokens: int,
    overdraft_tokens: int = 0,
    purchased_tokens: int = 0,
    rollover_tokens: int = 0,
) -> dict[str, object]:
    """Summarize a club token pool for redemption decisions."""
    total = allocated_tokens + rollover_tokens + purchased_tokens
    available = total - used_tokens + overdraft_tokens
    usage = (used_tokens / total) * 100 if total > 0 else 0.0
    return {
        "available_balance": available,
        "can_redeem": available > 0,
        "usage_percentage": usage,
        # less than 20% remaining
        "is_low_balance": available < total * 0.2,
    }


__all__ = [
    "normalize_session_type",
    "get_level_difference_category",
    "can_players_stake",
    "calculate_adjusted_stake",
    "calculate_competitive_tokens",
    "calculate_social_tokens",
    "participation_tokens",
    "tokens_to_usd",
    "calculate_max_redemption_tokens",
    "get_subscription_tokens",
    "calculate_club_pool_status",
]
