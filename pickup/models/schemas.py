"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, model_validator

from pickup.models.domain import (
    Game,
    GameLocation,
    PlayerProfile,
    Recurrence,
    SkillLevel,
    Sport,
)
from pickup.utils.exceptions import PositionErrorReason


# ============================================================================
# Players
# ============================================================================

class CreateProfileRequest(BaseModel):
    """Request to create the caller's profile."""

    display_name: str = Field(min_length=1, max_length=100)
    email: Optional[str] = None


class PlayerProfileResponse(PlayerProfile):
    """Profile plus the tier name for each sport rating."""

    tiers: Dict[str, str] = Field(default_factory=dict)


class RatingChangeResponse(BaseModel):
    game_id: str
    sport: Sport
    rating_before: int
    rating_after: int
    rating_change: int
    created_at: datetime


# ============================================================================
# Games
# ============================================================================

class CreateGameRequest(BaseModel):
    """Request to create a new game. start_time without an offset is read as UTC."""

    sport: Sport
    location: GameLocation
    start_time: datetime
    duration_minutes: int
    max_players: int
    skill_level: SkillLevel
    min_rating: Optional[int] = None
    recurrence: Optional[Recurrence] = None


class CheckInRequest(BaseModel):
    """
    Device position reported with a check-in, or the reason the device
    couldn't determine it.
    """

    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    error: Optional[PositionErrorReason] = None

    @model_validator(mode="after")
    def validate_position_or_error(self):
        """Ensure either a full position or an error reason is provided."""
        has_position = self.latitude is not None and self.longitude is not None
        if not has_position and self.error is None:
            raise ValueError("Provide latitude and longitude, or an error reason")
        return self


class SubmitResultsRequest(BaseModel):
    """Final score submitted by the host."""

    team1: List[str]
    team2: List[str]
    team1_score: int
    team2_score: int


class GameResponse(Game):
    """Game plus check-in window state and, for nearby searches, distance."""

    check_in_window_open: bool = False
    check_in_opens_in_ms: int = 0
    distance_meters: Optional[float] = None


class StartGameResponse(BaseModel):
    game: GameResponse
    penalized: List[str]
    penalty_failures: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# Friends
# ============================================================================

class PlayerSummary(BaseModel):
    player_id: str
    display_name: str


class FollowResponse(BaseModel):
    follower_id: str
    following_id: str


class FollowStatusRequest(BaseModel):
    player_ids: List[str] = Field(max_length=100)


class FollowStatus(BaseModel):
    following: bool
    followed_by: bool
