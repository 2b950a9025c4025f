"""Player profile and stats route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from pickup.api.auth_dependencies import get_current_player_id, get_persistence, require_player
from pickup.api.routes import game_error_to_http, limiter
from pickup.database.persistence import Persistence
from pickup.models.domain import PlayerProfile
from pickup.models.schemas import CreateProfileRequest, PlayerProfileResponse, RatingChangeResponse
from pickup.services import calculation_service, player_service, stats_service
from pickup.utils.exceptions import GameError

logger = logging.getLogger(__name__)
router = APIRouter()


def _profile_response(profile: PlayerProfile) -> PlayerProfileResponse:
    return PlayerProfileResponse(
        **profile.model_dump(),
        tiers={
            sport.value: calculation_service.tier(rating)
            for sport, rating in profile.ratings.items()
        },
    )


@router.post("/api/players", response_model=PlayerProfileResponse)
@limiter.limit("10/minute")
async def create_profile(
    request: Request,
    payload: CreateProfileRequest,
    player_id: str = Depends(get_current_player_id),
    persistence: Persistence = Depends(get_persistence),
):
    """Create the caller's profile, or return it if it already exists."""
    try:
        profile = await player_service.create_profile_if_not_exists(
            persistence, player_id, payload.display_name, payload.email
        )
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error creating profile: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating profile")
    return _profile_response(profile)


@router.get("/api/players/me", response_model=PlayerProfileResponse)
async def get_my_profile(player: PlayerProfile = Depends(require_player)):
    """Get the caller's profile."""
    return _profile_response(player)


@router.get("/api/players/{player_id}", response_model=PlayerProfileResponse)
async def get_profile(player_id: str, persistence: Persistence = Depends(get_persistence)):
    """Get a player's profile."""
    try:
        profile = await player_service.get_profile(persistence, player_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error fetching player {player_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error fetching player")
    return _profile_response(profile)


@router.get("/api/players/{player_id}/stats", response_model=stats_service.PlayerStats)
async def get_player_stats(player_id: str, persistence: Persistence = Depends(get_persistence)):
    """Win/loss record, per-sport and per-location counts and game history."""
    try:
        await player_service.get_profile(persistence, player_id)
        return await stats_service.get_player_stats(persistence, player_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error computing stats for player {player_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error computing player stats")


@router.get("/api/players/{player_id}/rating-history", response_model=List[RatingChangeResponse])
async def get_rating_history(player_id: str, persistence: Persistence = Depends(get_persistence)):
    """Rating changes from each completed game, oldest first."""
    try:
        changes = await player_service.get_rating_history(persistence, player_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error fetching rating history for player {player_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error fetching rating history")
    return [RatingChangeResponse(**change.model_dump()) for change in changes]
