"""Follow connection route handlers."""

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException

from pickup.api.auth_dependencies import get_persistence, require_player
from pickup.api.routes import game_error_to_http
from pickup.database.persistence import Persistence
from pickup.models.domain import PlayerProfile
from pickup.models.schemas import FollowResponse, FollowStatus, FollowStatusRequest, PlayerSummary
from pickup.services import friend_service
from pickup.utils.exceptions import GameError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/friends/following", response_model=List[PlayerSummary])
async def get_following(
    player: PlayerProfile = Depends(require_player),
    persistence: Persistence = Depends(get_persistence),
):
    """Players the caller follows."""
    try:
        return await friend_service.get_following(persistence, player.id)
    except Exception as e:
        logger.error(f"Error fetching following list: {e}")
        raise HTTPException(status_code=500, detail="Error fetching following list")


@router.get("/api/friends/followers", response_model=List[PlayerSummary])
async def get_followers(
    player: PlayerProfile = Depends(require_player),
    persistence: Persistence = Depends(get_persistence),
):
    """Players following the caller."""
    try:
        return await friend_service.get_followers(persistence, player.id)
    except Exception as e:
        logger.error(f"Error fetching followers: {e}")
        raise HTTPException(status_code=500, detail="Error fetching followers")


@router.post("/api/friends/status", response_model=Dict[str, FollowStatus])
async def batch_follow_status(
    payload: FollowStatusRequest,
    player: PlayerProfile = Depends(require_player),
    persistence: Persistence = Depends(get_persistence),
):
    """Follow status between the caller and each listed player."""
    try:
        return await friend_service.batch_follow_status(persistence, player.id, payload.player_ids)
    except Exception as e:
        logger.error(f"Error fetching follow status: {e}")
        raise HTTPException(status_code=500, detail="Error fetching follow status")


@router.post("/api/friends/{player_id}", response_model=FollowResponse)
async def follow(
    player_id: str,
    player: PlayerProfile = Depends(require_player),
    persistence: Persistence = Depends(get_persistence),
):
    """Follow another player."""
    try:
        return await friend_service.follow(persistence, player.id, player_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error following player: {e}")
        raise HTTPException(status_code=500, detail="Error following player")


@router.delete("/api/friends/{player_id}")
async def unfollow(
    player_id: str,
    player: PlayerProfile = Depends(require_player),
    persistence: Persistence = Depends(get_persistence),
):
    """Stop following a player."""
    try:
        await friend_service.unfollow(persistence, player.id, player_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error unfollowing player: {e}")
        raise HTTPException(status_code=500, detail="Error unfollowing player")
    return {"status": "ok", "message": "Unfollowed"}
