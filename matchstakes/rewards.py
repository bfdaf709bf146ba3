"""Session reward calculation.

:func:`calculate_session_rewards` never raises. Any failure while computing
rewards is logged and answered with the fixed :data:`FALLBACK_REWARDS`
table so callers can always show a result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from . import economics as econ
from .analyzer import analyze_match
from .models import MomentumState, SessionRewardResult, TennisAnalysis
from .momentum import track_momentum
from .services.exceptions import CalculationFallback

logger = logging.getLogger(__name__)

# Baseline rewards used whenever the calculation fails.
FALLBACK_REWARDS = {
    econ.SOCIAL: SessionRewardResult(
        win_xp=15, win_hp=7, win_tokens=15, lose_xp=10, lose_hp=-3, lose_tokens=4,
        difficulty_multiplier=1.0, level_difference=0, fallback=True,
    ),
    econ.COMPETITIVE: SessionRewardResult(
        win_xp=30, win_hp=3, win_tokens=30, lose_xp=21, lose_hp=-7, lose_tokens=9,
        difficulty_multiplier=1.0, level_difference=0, fallback=True,
    ),
    econ.TRAINING: SessionRewardResult(
        win_xp=22, win_hp=5, win_tokens=12, lose_xp=15, lose_hp=-5, lose_tokens=12,
        difficulty_multiplier=1.0, level_difference=0, fallback=True,
    ),
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def level_difference_multiplier(player_level: int, opponent_level: int) -> float:
    """Scale rewards by how far the opponent sits above or below the player."""
    diff = opponent_level - player_level
    if diff > 0:
        value = 1.0 + econ.LEVEL_STEP_HIGHER * diff
    else:
        value = max(econ.MIN_DIFFICULTY, 1.0 + econ.LEVEL_STEP_LOWER * diff)
    return round(_clamp(value, econ.MIN_DIFFICULTY, econ.MAX_DIFFICULTY), 4)


def skill_multiplier(player_skill: str | None, opponent_skill: str | None) -> float:
    """Return the skill tier multiplier; ``1.0`` when either skill is unknown."""
    if not player_skill or not opponent_skill:
        return 1.0
    try:
        gap = econ.SKILL_TIERS.index(opponent_skill.lower()) - econ.SKILL_TIERS.index(
            player_skill.lower()
        )
    except ValueError:
        return 1.0
    if gap > 0:
        value = 1.0 + econ.SKILL_STEP_HIGHER * gap
    else:
        value = 1.0 + econ.SKILL_STEP_LOWER * gap
    return round(max(econ.MIN_SKILL_MULTIPLIER, value), 4)


def tennis_bonus_multiplier(analysis: TennisAnalysis | None) -> float:
    """Return the bonus for breaks, comebacks and clutch finishes.

    Clutch doubles whatever the other bonuses produced; the total is capped
    at :data:`economics.MAX_TENNIS_MULTIPLIER`.
    """
    if analysis is None:
        return 1.0
    value = 1.0
    if analysis.double_break_bonus:
        value += econ.DOUBLE_BREAK_BONUS
    if analysis.is_comeback:
        value += econ.COMEBACK_BONUS
    if analysis.clutch_bonus:
        value *= econ.CLUTCH_FACTOR
    return min(value, econ.MAX_TENNIS_MULTIPLIER)


def duration_multiplier(duration_minutes: int | None) -> float:
    if not duration_minutes:
        return 1.0
    return min(1 + (duration_minutes - 60) / 120, econ.MAX_DURATION_MULTIPLIER)


def session_hp_cost(
    session_type: str,
    player_level: int,
    opponent_level: int,
    intensity: str = "medium",
    duration_minutes: int | None = None,
) -> int:
    """Return the HP a player spends on a session, never less than 1."""
    kind = econ.normalize_session_type(session_type)
    if intensity not in econ.INTENSITY_MULTIPLIERS:
        raise CalculationFallback(f"Unknown intensity '{intensity}'")
    cost = math.floor(econ.BASE_HP_COST[kind] * econ.INTENSITY_MULTIPLIERS[intensity])

    # beating up on lower level players is cheaper
    if player_level > opponent_level:
        gap = player_level - opponent_level
        if gap >= 6:
            cost -= econ.HP_REDUCTION_LARGE
        elif gap >= 3:
            cost -= econ.HP_REDUCTION_MODERATE

    cost = math.floor(cost * duration_multiplier(duration_minutes))
    return max(econ.MIN_HP_COST, cost)


def _session_tokens(kind: str, stakes_amount: int) -> tuple[int, int, int]:
    """Return ``(win_tokens, lose_tokens, rake_tokens)``."""
    if kind == econ.TRAINING:
        return econ.TRAINING_COACH_FEE, econ.TRAINING_COACH_FEE, 0
    participation = econ.participation_tokens(kind)
    if stakes_amount <= 0:
        return econ.BASE_TOKENS[kind], participation, 0
    if kind == econ.SOCIAL:
        share, rake, _ = econ.calculate_social_tokens(stakes_amount)
    else:
        share, rake = econ.calculate_competitive_tokens(stakes_amount, True)
    return share, participation, rake


def _compute_session_rewards(
    session_type: str,
    player_level: int,
    opponent_level: int,
    stakes_amount: int,
    session_duration: int | None,
    player_skill: str | None,
    opponent_skill: str | None,
    analysis: TennisAnalysis | None,
    intensity: str,
    suppress_hp: bool,
) -> SessionRewardResult:
    kind = econ.normalize_session_type(session_type)
    if stakes_amount < 0:
        raise CalculationFallback(f"Negative stake {stakes_amount}")
    if session_duration is not None and session_duration < 0:
        raise CalculationFallback(f"Negative duration {session_duration}")

    difficulty = _clamp(
        level_difference_multiplier(player_level, opponent_level)
        * skill_multiplier(player_skill, opponent_skill),
        econ.MIN_DIFFICULTY,
        econ.MAX_DIFFICULTY,
    )
    tennis = tennis_bonus_multiplier(analysis)

    win_xp = max(1, math.floor(econ.BASE_XP[kind] * difficulty * tennis))
    lose_xp = win_xp * econ.LOSER_XP_PERCENT // 100

    if suppress_hp:
        win_hp = lose_hp = 0
    else:
        cost = session_hp_cost(kind, player_level, opponent_level, intensity, session_duration)
        win_hp = max(1, econ.WIN_HP_BONUS - cost)
        lose_hp = -cost

    win_tokens, lose_tokens, rake = _session_tokens(kind, stakes_amount)
    return SessionRewardResult(
        win_xp=win_xp,
        win_hp=win_hp,
        win_tokens=win_tokens,
        lose_xp=lose_xp,
        lose_hp=lose_hp,
        lose_tokens=lose_tokens,
        difficulty_multiplier=round(difficulty, 4),
        level_difference=opponent_level - player_level,
        tennis_multiplier=round(tennis, 4),
        rake_tokens=rake,
    )


def fallback_rewards(session_type: str) -> SessionRewardResult:
    """Return the baseline table entry for ``session_type``."""
    try:
        kind = econ.normalize_session_type(session_type)
    except (ValueError, AttributeError):
        kind = econ.COMPETITIVE
    return FALLBACK_REWARDS[kind]


def calculate_session_rewards(
    session_type: str,
    player_level: int,
    opponent_level: int,
    is_winner: bool = True,
    stakes_amount: int = 0,
    session_duration: int | None = 60,
    player_skill: str | None = None,
    opponent_skill: str | None = None,
    analysis: TennisAnalysis | None = None,
    intensity: str = "medium",
    suppress_hp: bool = False,
) -> SessionRewardResult:
    """Return win and loss rewards for a session from the player's side.

    ``session_type`` is one of ``social``, ``competitive``, ``training`` or
    ``match`` (treated as competitive). ``stakes_amount`` is the stake at
    risk, already level-adjusted. ``suppress_hp`` zeroes the HP effect for
    session categories that carry no HP impact.

    Both outcomes are always filled in; ``is_winner`` is recorded so the
    caller can read its own side through :func:`rewards_for_outcome`.
    """
    try:
        result = _compute_session_rewards(
            session_type,
            player_level,
            opponent_level,
            stakes_amount,
            session_duration,
            player_skill,
            opponent_skill,
            analysis,
            intensity,
            suppress_hp,
        )
    except Exception as exc:
        logger.warning(
            "Reward calculation failed for %s (levels %r vs %r, stake %r): %s; using baseline",
            session_type,
            player_level,
            opponent_level,
            stakes_amount,
            exc,
        )
        result = fallback_rewards(session_type)
        if suppress_hp:
            result = replace(result, win_hp=0, lose_hp=0)
    logger.debug("Rewards for %s winner=%s: %s", session_type, is_winner, result)
    return result


def rewards_for_outcome(result: SessionRewardResult, is_winner: bool) -> dict[str, int]:
    """Return the ``xp``/``hp``/``tokens`` a player gets for one outcome."""
    if is_winner:
        return {"xp": result.win_xp, "hp": result.win_hp, "tokens": result.win_tokens}
    return {"xp": result.lose_xp, "hp": result.lose_hp, "tokens": result.lose_tokens}


def average_opponent_level(levels: Sequence[int]) -> int:
    """Return the rounded mean level of a doubles pairing."""
    if not levels:
        raise ValueError("At least one opponent level is required")
    return int(round(sum(levels) / len(levels)))


@dataclass
class MatchRewardReport:
    rewards: SessionRewardResult
    analysis: TennisAnalysis
    momentum: MomentumState
    opponent_level: int

    def to_dict(self) -> dict:
        return {
            "rewards": self.rewards.to_dict(),
            "analysis": self.analysis.to_dict(),
            "momentum": self.momentum.to_dict(),
            "opponent_level": self.opponent_level,
        }


def calculate_match_rewards(
    player_level: int,
    opponent_levels: int | Sequence[int],
    sets: Iterable = (),
    current_set: int = 0,
    is_doubles: bool = False,
    player_skill: str | None = None,
    opponent_skill: str | None = None,
    is_winner: bool = True,
    stakes_amount: int = 0,
    session_duration: int | None = 60,
    session_type: str = "match",
) -> MatchRewardReport:
    """Analyze a match in progress or finished and price its rewards.

    Doubles matches are priced against the average opponent level.
    """
    sets = list(sets)
    if isinstance(opponent_levels, int):
        opponent_level = opponent_levels
    else:
        opponent_level = average_opponent_level(list(opponent_levels))

    analysis = analyze_match(sets, is_doubles=is_doubles)
    momentum = track_momentum(sets, current_set, analysis)
    rewards = calculate_session_rewards(
        session_type,
        player_level,
        opponent_level,
        is_winner=is_winner,
        stakes_amount=stakes_amount,
        session_duration=session_duration,
        player_skill=player_skill,
        opponent_skill=opponent_skill,
        analysis=analysis,
    )
    return MatchRewardReport(rewards, analysis, momentum, opponent_level)


__all__ = [
    "FALLBACK_REWARDS",
    "level_difference_multiplier",
    "skill_multiplier",
    "tennis_bonus_multiplier",
    "duration_multiplier",
    "session_hp_cost",
    "fallback_rewards",
    "calculate_session_rewards",
    "rewards_for_outcome",
    "average_opponent_level",
    "calculate_match_rewards",
    "MatchRewardReport",
]
