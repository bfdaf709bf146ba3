import pytest
from matchstakes import economics as econ


def test_level_difference_categories():
    assert econ.get_level_difference_category(5, 7) == "equal_levels"
    assert econ.get_level_difference_category(5, 9) == "moderate_diff"
    assert econ.get_level_difference_category(9, 4) == "large_diff"


def test_adjusted_stake():
    assert econ.calculate_adjusted_stake(100, 5, 6) == 100
    assert econ.calculate_adjusted_stake(100, 5, 9) == 75
    assert econ.calculate_adjusted_stake(100, 5, 15) == 50
    assert econ.calculate_adjusted_stake(100, 5, 16) == 0
    assert not econ.can_players_stake(1, 12)


def test_competitive_split_conserves_stake():
    for stake in (0, 1, 9, 10, 11, 99, 100, 333):
        share, rake = econ.calculate_competitive_tokens(stake, True)
        assert share + rake == stake
    assert econ.calculate_competitive_tokens(100, False) == (0, 10)


def test_social_split():
    assert econ.calculate_social_tokens(30) == (18, 2, 20)
    assert econ.calculate_social_tokens(10) == (9, 1, 10)


def test_participation_tokens():
    assert econ.participation_tokens("competitive") == 9
    assert econ.participation_tokens("social") == 4
    assert econ.participation_tokens("training") == 12


def test_normalize_session_type():
    assert econ.normalize_session_type("Match") == "competitive"
    assert econ.normalize_session_type("social_play") == "social"
    with pytest.raises(ValueError):
        econ.normalize_session_type("squash")


def test_redemption_and_value():
    assert econ.calculate_max_redemption_tokens("court_booking", 70.0) == 3000
    assert econ.tokens_to_usd(1000) == 7.0
    with pytest.raises(ValueError):
        econ.calculate_max_redemption_tokens("spa_day", 10)


def test_subscription_tokens():
    assert econ.get_subscription_tokens("player", "premium") == 250
    assert econ.get_subscription_tokens("club", "unknown") == 0


def test_club_pool_status():
    status = econ.calculate_club_pool_status(1000, 900, rollover_tokens=0)
    assert status["available_balance"] == 100
    assert status["can_redeem"] is True
    assert status["usage_percentage"] == 90.0
    assert status["is_low_balance"] is True

    empty = econ.calculate_club_pool_status(0, 0)
    assert empty["usage_percentage"] == 0.0
    assert empty["can_redeem"] is False
