"""
Player profile service.
"""

import logging
from typing import List, Optional

from pickup.database.persistence import Persistence
from pickup.models.domain import PlayerProfile, RatingChange
from pickup.utils.exceptions import NotFoundError, TransactionConflictError, ValidationError

logger = logging.getLogger(__name__)


async def get_profile(persistence: Persistence, player_id: str) -> PlayerProfile:
    """
    Get a player's profile.

    Raises:
        NotFoundError: If the player has no profile
    """
    profile = await persistence.get_player(player_id)
    if profile is None:
        raise NotFoundError(f"Player {player_id} not found")
    return profile


async def create_profile_if_not_exists(
    persistence: Persistence,
    player_id: str,
    display_name: str,
    email: Optional[str] = None,
) -> PlayerProfile:
    """
    Create a profile with default ratings and reliability, or return the existing one.

    Args:
        persistence: Storage backend
        player_id: Opaque identifier issued by the identity provider
        display_name: Name shown to other players
        email: Optional contact email

    Returns:
        The stored profile
    """
    display_name = (display_name or "").strip()
    if not display_name:
        raise ValidationError("Display name is required")

    existing = await persistence.get_player(player_id)
    if existing is not None:
        return existing

    profile = PlayerProfile(id=player_id, display_name=display_name, email=email)
    try:
        async with persistence.transaction() as tx:
            tx.add_player(profile)
    except TransactionConflictError:
        # Created concurrently (e.g. two tabs signing in at once)
        return await get_profile(persistence, player_id)

    logger.info(f"Created profile for player {player_id}")
    return profile


async def get_rating_history(persistence: Persistence, player_id: str) -> List[RatingChange]:
    """Rating changes for a player, oldest first."""
    await get_profile(persistence, player_id)
    return await persistence.list_rating_changes(player_id)
