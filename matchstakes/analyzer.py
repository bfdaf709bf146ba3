"""Derive tennis bonus conditions from final set scores.

Breaks are estimated from each set's final score only; there is no
point-by-point data behind them. Treat ``break_count`` as an approximation
rather than a tennis statistic.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from .models import SetScore, TennisAnalysis

SINGLES_MAX_SETS = 5
DOUBLES_MAX_SETS = 3
# a set margin of this many games swings momentum
MOMENTUM_SHIFT_MARGIN = 3


def completed_sets(sets: Iterable) -> list[SetScore]:
    """Return the completed sets in order, parsing raw values as needed."""
    parsed = (SetScore.from_value(s) for s in sets)
    return [s for s in parsed if s.completed]


def count_breaks(sets: Sequence[SetScore]) -> int:
    total = 0.0
    for s in sets:
        if s.player_score >= 6 and s.difference >= 2:
            total += 1
        if s.player_score >= 6 and s.opponent_score <= 2:
            total += 0.5
    return math.floor(total)


def momentum_shift(last_set: SetScore | None) -> str:
    if last_set is None:
        return "neutral"
    if last_set.difference >= MOMENTUM_SHIFT_MARGIN:
        return "player"
    if last_set.difference <= -MOMENTUM_SHIFT_MARGIN:
        return "opponent"
    return "neutral"


def analyze_match(
    sets: Iterable,
    is_doubles: bool = False,
    max_sets: int | None = None,
) -> TennisAnalysis:
    """Analyze the completed sets of a match from the player's side.

    ``max_sets`` defaults to 3 for doubles and 5 for singles.
    """
    done = completed_sets(sets)
    if not done:
        return TennisAnalysis()
    if max_sets is None:
        max_sets = DOUBLES_MAX_SETS if is_doubles else SINGLES_MAX_SETS

    breaks = count_breaks(done)
    won = sum(1 for s in done if s.won)
    lost = sum(1 for s in done if s.opponent_score > s.player_score)

    lost_first = done[0].opponent_score > done[0].player_score
    comeback = lost_first and any(s.won for s in done[1:])

    final_set = len(done) >= max_sets - 1
    return TennisAnalysis(
        break_count=breaks,
        is_comeback=comeback,
        is_final_set=final_set,
        clutch_bonus=final_set and won > lost,
        double_break_bonus=breaks >= 2,
        momentum_shift=momentum_shift(done[-1]),
    )


__all__ = ["analyze_match", "completed_sets", "count_breaks", "momentum_shift"]
