"""
Tests for the reliability service - no-show penalties and attendance boosts.
"""
import pytest

from pickup.services import reliability_service


def test_penalize():
    assert reliability_service.penalize(100) == 95
    assert reliability_service.penalize(95) == 90  # 90.25
    assert reliability_service.penalize(50) == 48  # 47.5 rounds up


def test_penalize_small_scores_still_drop():
    # 10 * 0.95 = 9.5 would round back to 10
    assert reliability_service.penalize(10) == 9
    assert reliability_service.penalize(1) == 0
    assert reliability_service.penalize(0) == 0


def test_penalize_repeatedly_strictly_decreases_to_zero():
    score = 100
    steps = 0
    while score > 0:
        penalized = reliability_service.penalize(score)
        assert 0 <= penalized < score
        score = penalized
        steps += 1
    assert steps < 200
    assert reliability_service.penalize(score) == 0


def test_penalize_custom_multiplier():
    assert reliability_service.penalize(100, multiplier=0.5) == 50
    assert reliability_service.penalize(100, multiplier=0) == 0


@pytest.mark.parametrize("multiplier", [1.0, 1.5, -0.1])
def test_penalize_rejects_invalid_multiplier(multiplier):
    with pytest.raises(ValueError):
        reliability_service.penalize(80, multiplier=multiplier)


def test_boost():
    assert reliability_service.boost(50) == 51
    assert reliability_service.boost(99) == 100
    assert reliability_service.boost(100) == 100


@pytest.mark.parametrize("start", [0, 42, 95, 100])
def test_boost_never_exceeds_100(start):
    score = start
    for _ in range(150):
        score = reliability_service.boost(score)
        assert score <= 100
    assert score == 100
