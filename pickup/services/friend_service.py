"""
Friend service for managing follow connections.

Connections are directed (follower -> following). Duplicate edges and
self-follows are rejected.
"""

import logging
from typing import Dict, Iterable, List

from pickup.database.persistence import Persistence
from pickup.services.player_service import get_profile
from pickup.utils.exceptions import StateError, ValidationError

logger = logging.getLogger(__name__)


async def _summaries(persistence: Persistence, player_ids: Iterable[str]) -> List[Dict]:
    """Display summaries for a list of player IDs, skipping deleted profiles."""
    summaries = []
    for player_id in player_ids:
        profile = await persistence.get_player(player_id)
        if profile is None:
            continue
        summaries.append({
            "player_id": profile.id,
            "display_name": profile.display_name,
        })
    return summaries


async def follow(persistence: Persistence, follower_id: str, following_id: str) -> Dict:
    """
    Follow another player.

    Args:
        persistence: Storage backend
        follower_id: Player doing the following
        following_id: Player to follow

    Returns:
        Dict describing the new connection

    Raises:
        ValidationError: If a player tries to follow themselves
        NotFoundError: If the target player doesn't exist
        StateError: If the connection already exists
    """
    if follower_id == following_id:
        raise ValidationError("Cannot follow yourself")

    await get_profile(persistence, following_id)

    if not await persistence.add_follow(follower_id, following_id):
        raise StateError("Already following this player")

    logger.info(f"Player {follower_id} followed {following_id}")
    return {"follower_id": follower_id, "following_id": following_id}


async def unfollow(persistence: Persistence, follower_id: str, following_id: str) -> None:
    """
    Remove a follow connection.

    Raises:
        StateError: If the connection doesn't exist
    """
    if not await persistence.remove_follow(follower_id, following_id):
        raise StateError("Not following this player")


async def get_following(persistence: Persistence, player_id: str) -> List[Dict]:
    """Players this player follows."""
    return await _summaries(persistence, await persistence.list_following(player_id))


async def get_followers(persistence: Persistence, player_id: str) -> List[Dict]:
    """Players following this player."""
    return await _summaries(persistence, await persistence.list_followers(player_id))


async def batch_follow_status(
    persistence: Persistence, player_id: str, other_player_ids: List[str]
) -> Dict[str, Dict[str, bool]]:
    """
    Follow status between one player and several others.

    Returns:
        other_player_id -> {"following": bool, "followed_by": bool}
    """
    statuses = {}
    for other_id in other_player_ids:
        if other_id == player_id:
            continue
        statuses[other_id] = {
            "following": await persistence.is_following(player_id, other_id),
            "followed_by": await persistence.is_following(other_id, player_id),
        }
    return statuses
