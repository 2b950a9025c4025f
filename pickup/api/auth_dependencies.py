"""
Authentication and service dependencies for FastAPI routes.

Identity comes from the upstream identity provider: the bearer token is the
caller's opaque player ID. Routes never reach for module-level persistence;
they receive it (and the lifecycle manager) through these dependencies, which
tests replace with app.dependency_overrides.
"""

import os
from typing import Set

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.requests import HTTPConnection

from pickup.database.persistence import Persistence
from pickup.models.domain import PlayerProfile
from pickup.services.game_service import GameLifecycleManager

security = HTTPBearer()


def get_persistence(connection: HTTPConnection) -> Persistence:
    """Persistence configured at startup."""
    return connection.app.state.persistence


def get_game_manager(connection: HTTPConnection) -> GameLifecycleManager:
    """Lifecycle manager configured at startup."""
    return connection.app.state.game_manager


async def get_current_player_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Dependency to get the caller's player ID from the bearer token.

    Raises:
        HTTPException: If the token is empty
    """
    player_id = credentials.credentials.strip()
    if not player_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return player_id


async def require_player(
    player_id: str = Depends(get_current_player_id),
    persistence: Persistence = Depends(get_persistence),
) -> PlayerProfile:
    """
    Require an authenticated caller with an existing player profile.

    Raises 403 if the caller hasn't created a profile yet.
    """
    profile = await persistence.get_player(player_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Player profile required. Create one first.",
        )
    return profile


def get_operator_ids() -> Set[str]:
    """Player IDs allowed to perform operator actions (OPERATOR_PLAYER_IDS, comma-separated)."""
    raw = os.getenv("OPERATOR_PLAYER_IDS", "")
    return {value.strip() for value in raw.split(",") if value.strip()}


async def require_operator(player_id: str = Depends(get_current_player_id)) -> str:
    """Require an operator. Returns the operator's player ID."""
    if player_id not in get_operator_ids():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required",
        )
    return player_id
