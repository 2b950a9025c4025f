"""
Typed domain values for games, player profiles and rating history.

Persistence adapters decode stored records into these models once, at the
boundary; services work with them without re-validating.
"""

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pickup.utils.constants import INITIAL_RATING, INITIAL_RELIABILITY
from pickup.utils.datetime_utils import ensure_utc, utcnow
from pickup.utils.geo_utils import Coordinates


class Sport(str, enum.Enum):
    """Supported sports."""

    BASKETBALL = "basketball"
    SOCCER = "soccer"


class SkillLevel(str, enum.Enum):
    """Game skill level."""

    CASUAL = "casual"
    COMPETITIVE = "competitive"


class GameStatus(str, enum.Enum):
    """Game lifecycle status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING_RESULTS = "pending_results"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecurrenceFrequency(str, enum.Enum):
    """How often a recurring game repeats."""

    NONE = "none"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"


def _unique(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


class GameLocation(BaseModel):
    """Where a game is played."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str = ""
    name: str = ""

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


class Recurrence(BaseModel):
    """Recurrence descriptor. day_of_week follows datetime.weekday() (Monday = 0)."""

    frequency: RecurrenceFrequency = RecurrenceFrequency.NONE
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    parent_game_id: Optional[str] = None


class GameResult(BaseModel):
    """Submitted score awaiting (or past) majority confirmation."""

    team1: List[str]
    team2: List[str]
    team1_score: int = Field(ge=0)
    team2_score: int = Field(ge=0)
    confirmed_by: List[str] = Field(default_factory=list)

    @property
    def participants(self) -> List[str]:
        return self.team1 + self.team2

    def has_majority(self) -> bool:
        """Strict majority: 2 of 4 is not enough, 3 of 4 is."""
        return len(self.confirmed_by) * 2 > len(self.participants)


class Game(BaseModel):
    """A scheduled pickup game."""

    id: str
    host_id: str
    sport: Sport
    location: GameLocation
    start_time: datetime
    duration_minutes: int = Field(gt=0)
    max_players: int
    skill_level: SkillLevel
    min_rating: Optional[int] = None
    players: List[str] = Field(default_factory=list)
    checked_in: List[str] = Field(default_factory=list)
    status: GameStatus = GameStatus.OPEN
    results: Optional[GameResult] = None
    recurrence: Optional[Recurrence] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("start_time", "created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("players", "checked_in")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return _unique(value)

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    def is_host(self, player_id: str) -> bool:
        return self.host_id == player_id


class PlayerProfile(BaseModel):
    """A player's ratings and attendance record."""

    id: str
    display_name: str
    email: Optional[str] = None
    ratings: Dict[Sport, int] = Field(
        default_factory=lambda: {sport: INITIAL_RATING for sport in Sport}
    )
    reliability_score: int = Field(default=INITIAL_RELIABILITY, ge=0, le=100)
    games_played: int = Field(default=0, ge=0)
    games_attended: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def rating_for(self, sport: Sport) -> int:
        return self.ratings.get(sport, INITIAL_RATING)


class FriendConnection(BaseModel):
    """Directed follow edge (follower -> following)."""

    model_config = ConfigDict(frozen=True)

    follower_id: str
    following_id: str
    created_at: datetime = Field(default_factory=utcnow)


class RatingChange(BaseModel):
    """Per-game rating delta recorded when results are committed."""

    game_id: str
    player_id: str
    sport: Sport
    rating_before: int
    rating_after: int
    rating_change: int
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)
