from matchstakes.analyzer import analyze_match
from matchstakes.momentum import track_momentum, describe, confidence


def test_match_just_started():
    state = track_momentum([])
    assert state.score == 0
    assert state.trend == "stable"
    assert state.intensity == "low"
    assert state.description == "Match just started"
    assert state.confidence == 0.5


def test_momentum_with_analysis():
    sets = [(6, 2, True), (4, 6, True), (7, 5, True)]
    state = track_momentum(sets, current_set=3, analysis=analyze_match(sets))

    assert state.factors.score_difference == 25
    assert state.factors.recent_performance == 5
    assert state.factors.match_context == 15
    assert state.score == 45
    assert state.trend == "rising"
    assert state.intensity == "medium"
    assert state.description == "Strong momentum"
    assert state.confidence == 0.9


def test_score_is_bounded():
    sets = [(6, 0, True)] * 5
    state = track_momentum(sets, analysis=analyze_match(sets))
    assert state.score <= 100
    assert state.intensity == "high"
    assert state.description == "Dominating the match"
    assert state.confidence == 1.0

    losing = [(0, 6, True)] * 5
    state = track_momentum(losing)
    assert state.score == -80
    assert state.description == "Struggling to find rhythm"


def test_description_ladder():
    assert describe(61) == "Dominating the match"
    assert describe(60) == "Strong momentum"
    assert describe(11) == "Slight advantage"
    assert describe(0) == "Even match"
    assert describe(-10) == "Facing pressure"
    assert describe(-31) == "Under pressure"
    assert describe(-60) == "Struggling to find rhythm"


def test_confidence_grows_with_sets():
    assert confidence(1) == 0.5
    assert confidence(2) == 0.7
    assert confidence(4) == 1.0
