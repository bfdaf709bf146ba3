from __future__ import annotations

from typing import Iterable, Sequence

from .analyzer import completed_sets
from .models import MomentumFactors, MomentumState, SetScore, TennisAnalysis

MAX_SCORE = 100
SCORE_DIFF_CAP = 50
RECENT_CAP = 30
RECENT_WIN = 20
RECENT_LOSS = -15
DOMINANT_MARGIN = 3
DOMINANT_BONUS = 10
DOUBLE_BREAK_CONTEXT = 15
COMEBACK_CONTEXT = 20
CLUTCH_CONTEXT = 25

# (exclusive lower bound, label), checked top down
DESCRIPTIONS = (
    (60, "Dominating the match"),
    (30, "Strong momentum"),
    (10, "Slight advantage"),
    (-10, "Even match"),
    (-30, "Facing pressure"),
    (-60, "Under pressure"),
)
LOWEST_DESCRIPTION = "Struggling to find rhythm"


def _clamp(value, low, high):
    return max(low, min(high, value))


def score_difference(sets: Sequence[SetScore]) -> float:
    """Weighted game differential; the latest set counts 1.5x."""
    total = 0.0
    for idx, s in enumerate(sets):
        weight = 1.5 if idx == len(sets) - 1 else 1.0
        total += s.difference * weight
    return _clamp(total * 5, -SCORE_DIFF_CAP, SCORE_DIFF_CAP)


def recent_performance(sets: Sequence[SetScore]) -> int:
    performance = 0
    for s in sets[-2:]:
        performance += RECENT_WIN if s.won else RECENT_LOSS
        if abs(s.difference) >= DOMINANT_MARGIN:
            performance += DOMINANT_BONUS if s.won else -DOMINANT_BONUS
    return _clamp(performance, -RECENT_CAP, RECENT_CAP)


def match_context(analysis: TennisAnalysis | None) -> int:
    if analysis is None:
        return 0
    context = 0
    if analysis.double_break_bonus:
        context += DOUBLE_BREAK_CONTEXT
    if analysis.is_comeback:
        context += COMEBACK_CONTEXT
    if analysis.clutch_bonus:
        context += CLUTCH_CONTEXT
    return context


def determine_trend(sets: Sequence[SetScore]) -> str:
    if len(sets) < 2:
        return "stable"
    delta = sets[-1].difference - sets[-2].difference
    if delta > 1:
        return "rising"
    if delta < -1:
        return "falling"
    return "stable"


def determine_intensity(score: int) -> str:
    magnitude = abs(score)
    if magnitude >= 60:
        return "high"
    if magnitude >= 30:
        return "medium"
    return "low"


def describe(score: int) -> str:
    for bound, label in DESCRIPTIONS:
        if score > bound:
            return label
    return LOWEST_DESCRIPTION


def confidence(sets_played: int) -> float:
    """More completed sets means a more reliable reading."""
    return min(1.0, round(0.3 + 0.2 * sets_played, 2))


def track_momentum(
    sets: Iterable,
    current_set: int = 0,
    analysis: TennisAnalysis | None = None,
) -> MomentumState:
    """Return the player's momentum from the completed sets so far.

    ``current_set`` is the index of the set in play; only completed sets are
    scored.
    """
    done = completed_sets(sets)
    if not done:
        return MomentumState(
            score=0,
            trend="stable",
            intensity="low",
            description="Match just started",
            confidence=0.5,
        )

    factors = MomentumFactors(
        score_difference=score_difference(done),
        recent_performance=recent_performance(done),
        # reported only; not part of the score
        set_progress=len(done) * 10,
        match_context=match_context(analysis),
    )
    total = factors.score_difference + factors.recent_performance + factors.match_context
    score = int(_clamp(round(total), -MAX_SCORE, MAX_SCORE))
    return MomentumState(
        score=score,
        trend=determine_trend(done),
        intensity=determine_intensity(score),
        description=describe(score),
        confidence=confidence(len(done)),
        factors=factors,
    )


__all__ = ["track_momentum"]
