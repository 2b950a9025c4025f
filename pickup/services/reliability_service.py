"""
Reliability tracking: attendance-based adjustments to a player's 0-100 score.
"""

from pickup.utils.constants import MAX_RELIABILITY, NO_SHOW_PENALTY_MULTIPLIER
from pickup.utils.rounding import round_half_up


def penalize(score: int, multiplier: float = NO_SHOW_PENALTY_MULTIPLIER) -> int:
    """
    Apply one no-show penalty.

    The score is scaled by multiplier and rounded. Once the score is small
    enough that rounding would leave it unchanged (10 * 0.95 rounds back to
    10) it drops by one point instead, so repeated penalties always reach 0.

    Args:
        score: Current reliability score (0-100)
        multiplier: Scale factor in [0, 1)

    Returns:
        New reliability score, never negative
    """
    if not 0 <= multiplier < 1:
        raise ValueError(f"Penalty multiplier must be in [0, 1), got {multiplier}")
    if score <= 0:
        return 0
    penalized = round_half_up(score * multiplier)
    if penalized >= score:
        penalized = score - 1
    return max(0, penalized)


def boost(score: int) -> int:
    """Reward attendance with one point, capped at 100."""
    return min(MAX_RELIABILITY, score + 1)
