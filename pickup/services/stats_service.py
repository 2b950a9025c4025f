"""
Player stats derived from completed games.

Stats are recomputed from game records on every request; rating deltas come
from the rating history written when each game's results were committed.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from pickup.database.persistence import Persistence
from pickup.models.domain import Game, RatingChange
from pickup.services.calculation_service import calculate_winner
from pickup.utils.rounding import round_half_up

UNKNOWN_LOCATION = "Unknown"
NO_FAVORITE_LOCATION = "N/A"


class PlayerGameRecord(BaseModel):
    """One completed game from a player's point of view."""

    game_id: str
    sport: str
    date: datetime
    outcome: str  # 'win', 'loss', 'draw'
    won: bool
    drew: bool
    teammates: List[str]
    opponents: List[str]
    location_name: str
    score: str  # Player's team score first, e.g. "21-15"
    rating_change: Optional[int] = None
    rating_after: Optional[int] = None


class PlayerStats(BaseModel):
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    win_rate: int = 0  # Rounded percentage
    games_by_sport: Dict[str, int] = Field(default_factory=dict)
    games_by_location: Dict[str, int] = Field(default_factory=dict)
    favorite_location: str = NO_FAVORITE_LOCATION
    history: List[PlayerGameRecord] = Field(default_factory=list)


def compute_player_stats(
    player_id: str,
    games: Iterable[Game],
    rating_changes: Iterable[RatingChange] = (),
) -> PlayerStats:
    """
    Compute win/loss record, per-sport and per-location counts and game history.

    Games without results, or where the player is on neither team, are skipped.

    Args:
        player_id: Player to compute stats for
        games: The player's completed games
        rating_changes: The player's rating history records

    Returns:
        PlayerStats with history ordered most recent first
    """
    changes_by_game = {c.game_id: c for c in rating_changes if c.player_id == player_id}

    wins = losses = draws = 0
    by_sport: Counter = Counter()
    by_location: Counter = Counter()
    history: List[PlayerGameRecord] = []

    for game in games:
        results = game.results
        if results is None:
            continue
        on_team1 = player_id in results.team1
        on_team2 = player_id in results.team2
        if not on_team1 and not on_team2:
            continue

        if on_team1:
            own_score, other_score = results.team1_score, results.team2_score
            teammates = [p for p in results.team1 if p != player_id]
            opponents = list(results.team2)
        else:
            own_score, other_score = results.team2_score, results.team1_score
            teammates = [p for p in results.team2 if p != player_id]
            opponents = list(results.team1)

        winner = calculate_winner(own_score, other_score)
        if winner == 1:
            wins += 1
            outcome = "win"
        elif winner == 2:
            losses += 1
            outcome = "loss"
        else:
            draws += 1
            outcome = "draw"

        location_name = game.location.name or UNKNOWN_LOCATION
        by_sport[game.sport.value] += 1
        by_location[location_name] += 1

        change = changes_by_game.get(game.id)
        history.append(PlayerGameRecord(
            game_id=game.id,
            sport=game.sport.value,
            date=game.start_time,
            outcome=outcome,
            won=winner == 1,
            drew=winner == -1,
            teammates=teammates,
            opponents=opponents,
            location_name=location_name,
            score=f"{own_score}-{other_score}",
            rating_change=change.rating_change if change else None,
            rating_after=change.rating_after if change else None,
        ))

    total = wins + losses + draws
    history.sort(key=lambda record: record.date, reverse=True)
    # most_common keeps first-seen order for ties
    favorite = by_location.most_common(1)[0][0] if by_location else NO_FAVORITE_LOCATION

    return PlayerStats(
        total_games=total,
        wins=wins,
        losses=losses,
        draws=draws,
        win_rate=round_half_up(wins / total * 100) if total else 0,
        games_by_sport=dict(by_sport),
        games_by_location=dict(by_location),
        favorite_location=favorite,
        history=history,
    )


async def get_player_stats(persistence: Persistence, player_id: str) -> PlayerStats:
    """Load a player's completed games and rating history and compute their stats."""
    games = await persistence.list_completed_games(player_id)
    changes = await persistence.list_rating_changes(player_id)
    return compute_player_stats(player_id, games, changes)
