import logging
import pytest
import matchstakes.rewards as rewards
from matchstakes.analyzer import analyze_match
from matchstakes.models import TennisAnalysis
from matchstakes.rewards import (
    calculate_session_rewards,
    calculate_match_rewards,
    level_difference_multiplier,
    skill_multiplier,
    tennis_bonus_multiplier,
    session_hp_cost,
    rewards_for_outcome,
    FALLBACK_REWARDS,
)


def test_competitive_win_against_higher_level():
    result = calculate_session_rewards("competitive", 10, 15, is_winner=True, stakes_amount=100)

    assert result.difficulty_multiplier == 1.75
    assert result.level_difference == 5
    assert result.win_xp == 52
    assert result.lose_xp == 36
    assert result.win_tokens == 90
    assert result.rake_tokens == 10
    assert result.win_hp == 3
    assert result.lose_hp == -7
    assert result.fallback is False


def test_social_stake_is_capped():
    result = calculate_session_rewards("social", 5, 5, is_winner=False, stakes_amount=30)

    assert result.win_tokens == 18
    assert result.rake_tokens == 2
    assert rewards_for_outcome(result, is_winner=False)["tokens"] == 4
    assert result.win_xp == 15
    assert result.lose_xp == 10


def test_match_is_competitive():
    match = calculate_session_rewards("match", 3, 3)
    competitive = calculate_session_rewards("competitive", 3, 3)
    assert match == competitive
    assert match.win_tokens == 30
    assert match.lose_tokens == 9


def test_training_pays_coach_fee_both_ways():
    result = calculate_session_rewards("training", 4, 4)
    assert result.win_tokens == 12
    assert result.lose_tokens == 12
    assert result.rake_tokens == 0


def test_loser_never_out_earns_winner():
    for level in range(1, 20):
        for opponent in range(1, 20):
            result = calculate_session_rewards("competitive", level, opponent, stakes_amount=50)
            assert result.win_xp >= result.lose_xp
            assert result.win_tokens + result.rake_tokens == 50
            assert result.win_xp >= 1


def test_multipliers_are_clamped():
    assert level_difference_multiplier(1, 30) == 3.0
    assert level_difference_multiplier(30, 1) == 0.5
    assert level_difference_multiplier(5, 5) == 1.0
    assert skill_multiplier("beginner", "professional") == 1.6
    assert skill_multiplier("professional", "beginner") == 0.6
    assert skill_multiplier(None, "advanced") == 1.0


def test_difficulty_combines_level_and_skill():
    result = calculate_session_rewards(
        "competitive", 1, 20, player_skill="beginner", opponent_skill="professional"
    )
    assert result.difficulty_multiplier == 3.0


def test_tennis_bonus_stacks_and_caps():
    assert tennis_bonus_multiplier(None) == 1.0
    everything = TennisAnalysis(is_comeback=True, clutch_bonus=True, double_break_bonus=True)
    assert tennis_bonus_multiplier(everything) == pytest.approx(3.6)
    assert tennis_bonus_multiplier(TennisAnalysis(clutch_bonus=True)) == 2.0


def test_tennis_bonus_boosts_xp_not_tokens():
    analysis = TennisAnalysis(double_break_bonus=True)
    plain = calculate_session_rewards("competitive", 5, 5, stakes_amount=40)
    boosted = calculate_session_rewards("competitive", 5, 5, stakes_amount=40, analysis=analysis)
    assert boosted.win_xp == 45
    assert plain.win_xp == 30
    assert boosted.win_tokens == plain.win_tokens


def test_hp_cost_reductions():
    assert session_hp_cost("competitive", 5, 5) == 7
    assert session_hp_cost("competitive", 8, 5) == 6
    assert session_hp_cost("competitive", 12, 5) == 5
    assert session_hp_cost("social", 5, 5, intensity="low") == 2
    assert session_hp_cost("competitive", 5, 5, duration_minutes=180) == 14
    assert session_hp_cost("social", 20, 1, intensity="low") == 1


def test_suppressed_hp():
    result = calculate_session_rewards("social", 5, 5, suppress_hp=True)
    assert result.win_hp == 0
    assert result.lose_hp == 0


def test_unknown_session_type_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="matchstakes.rewards"):
        result = calculate_session_rewards("bowling", 5, 5)
    assert result == FALLBACK_REWARDS["competitive"]
    assert result.fallback is True
    assert "using baseline" in caplog.text


def test_bad_intensity_falls_back_to_session_baseline():
    result = calculate_session_rewards("social", 5, 5, intensity="volcanic")
    assert result == FALLBACK_REWARDS["social"]


def test_negative_stake_falls_back():
    result = calculate_session_rewards("training", 5, 5, stakes_amount=-5)
    assert result == FALLBACK_REWARDS["training"]


def test_unexpected_error_falls_back(monkeypatch):
    def boom(*args, **kwargs):
        raise ZeroDivisionError("bad table")

    monkeypatch.setattr(rewards, "level_difference_multiplier", boom)
    result = calculate_session_rewards("competitive", 5, 5, suppress_hp=True)
    assert result.fallback is True
    assert result.win_xp == 30
    assert result.win_hp == 0


def test_match_rewards_for_doubles():
    sets = [(6, 2, True), (4, 6, True), (7, 5, True)]
    report = calculate_match_rewards(5, [6, 9], sets=sets, current_set=3, is_doubles=True)

    assert report.opponent_level == 8
    assert report.analysis == analyze_match(sets, is_doubles=True)
    assert report.analysis.clutch_bonus is True
    # double break and clutch: (1 + 0.5) * 2
    assert report.rewards.tennis_multiplier == 3.0
    assert report.momentum.score > 0
    assert report.to_dict()["opponent_level"] == 8
