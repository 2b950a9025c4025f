"""
Elo rating service.
Computes expected scores, rating updates and tiers for team matches.
"""

from typing import Dict, Iterable, Mapping, Tuple

from pickup.utils.constants import K, RATING_SCALE, RATING_TIERS, TOP_TIER
from pickup.utils.rounding import round_half_up


# ============================================================================
# Helper Functions (Elo Calculations)
# ============================================================================

def expected_score(rating_a: float, rating_b: float) -> float:
    """
    Calculate expected score for player A against player B using the Elo formula.

    Formula: P(A beats B) = 1 / (1 + 10^((rating_B - rating_A) / 400))
    If rating_a > rating_b, result > 0.5 (A is favored)
    """
    return 1 / (1 + 10 ** ((rating_b - rating_a) / RATING_SCALE))


def new_rating(current: float, expected: float, actual: float, k: float = K) -> int:
    """
    Apply one Elo update.

    Args:
        current: Player's current rating
        expected: Expected score from expected_score()
        actual: 1 for a win, 0.5 for a draw, 0 for a loss
        k: K-factor

    Returns:
        New rating, rounded to the nearest integer
    """
    return round_half_up(current + k * (actual - expected))


def team_average(ratings: Iterable[float]) -> int:
    """Rounded mean of a team's ratings; 0 for an empty team."""
    ratings = list(ratings)
    if not ratings:
        return 0
    return round_half_up(sum(ratings) / len(ratings))


# ============================================================================
# Match Processing Helpers
# ============================================================================

def calculate_winner(team1_score: int, team2_score: int) -> int:
    """
    Determine winner: 1 = team1, 2 = team2, -1 = tie.

    Args:
        team1_score: Score for team 1
        team2_score: Score for team 2

    Returns:
        Winner indicator (1, 2, or -1 for tie)
    """
    if team1_score > team2_score:
        return 1
    elif team2_score > team1_score:
        return 2
    else:
        return -1


def actual_scores(team1_score: int, team2_score: int) -> Tuple[float, float]:
    """
    Convert a final score into Elo actual scores for (team1, team2).

    Winner gets 1.0, loser 0.0; a tie gives both 0.5.
    """
    winner = calculate_winner(team1_score, team2_score)
    if winner == 1:
        return 1.0, 0.0
    if winner == 2:
        return 0.0, 1.0
    return 0.5, 0.5


def process_match(
    team1_ratings: Mapping[str, float],
    team2_ratings: Mapping[str, float],
    team1_score: int,
    team2_score: int,
    k: float = K,
) -> Dict[str, int]:
    """
    Compute new ratings for every player in a two-team match.

    Each player is rated individually against the opposing team's average
    rating. This is not zero-sum across uneven or multi-player teams; for two
    equal single-player teams the deltas cancel exactly.

    Args:
        team1_ratings: Player ID -> current rating for team 1
        team2_ratings: Player ID -> current rating for team 2
        team1_score: Team 1's final score
        team2_score: Team 2's final score
        k: K-factor

    Returns:
        Player ID -> new rating for all players on both teams
    """
    team1_avg = team_average(team1_ratings.values())
    team2_avg = team_average(team2_ratings.values())
    team1_actual, team2_actual = actual_scores(team1_score, team2_score)

    new_ratings: Dict[str, int] = {}
    for player_id, rating in team1_ratings.items():
        new_ratings[player_id] = new_rating(
            rating, expected_score(rating, team2_avg), team1_actual, k
        )
    for player_id, rating in team2_ratings.items():
        new_ratings[player_id] = new_rating(
            rating, expected_score(rating, team1_avg), team2_actual, k
        )
    return new_ratings


def tier(rating: float) -> str:
    """Name of the rating tier (Bronze through Grandmaster)."""
    for upper_bound, name in RATING_TIERS:
        if rating < upper_bound:
            return name
    return TOP_TIER
