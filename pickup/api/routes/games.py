"""Game lifecycle route handlers and the live game WebSocket."""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from pickup.api.auth_dependencies import get_game_manager, get_persistence, require_player
from pickup.api.routes import build_game_response, game_error_to_http, limiter
from pickup.database.persistence import Persistence
from pickup.models.domain import GameStatus, PlayerProfile, SkillLevel, Sport
from pickup.models.schemas import (
    CheckInRequest,
    CreateGameRequest,
    GameResponse,
    StartGameResponse,
    SubmitResultsRequest,
)
from pickup.services.game_service import GameLifecycleManager
from pickup.services.position_service import ReportedPositionProvider
from pickup.services.websocket_manager import game_update_message, get_websocket_manager
from pickup.utils.exceptions import GameError
from pickup.utils.geo_utils import Coordinates, calculate_distance_meters

logger = logging.getLogger(__name__)
router = APIRouter()

# Seconds without client traffic before the server pings (and then gives up)
WEBSOCKET_TIMEOUT_SECONDS = 30


@router.post("/api/games", response_model=GameResponse, status_code=201)
@limiter.limit("30/minute")
async def create_game(
    request: Request,
    payload: CreateGameRequest,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Create a game hosted by the caller."""
    try:
        game = await manager.create_game(
            player.id,
            sport=payload.sport,
            location=payload.location,
            start_time=payload.start_time,
            duration_minutes=payload.duration_minutes,
            max_players=payload.max_players,
            skill_level=payload.skill_level,
            min_rating=payload.min_rating,
            recurrence=payload.recurrence,
        )
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error creating game: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating game")
    return build_game_response(manager, game)


@router.get("/api/games", response_model=List[GameResponse])
async def list_games(
    sport: Optional[Sport] = None,
    skill_level: Optional[SkillLevel] = None,
    status: Optional[GameStatus] = None,
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    radius_meters: Optional[float] = Query(None, gt=0),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """
    List games. With latitude and longitude, games are ordered nearest first
    and radius_meters limits how far away they can be.
    """
    near = None
    if latitude is not None and longitude is not None:
        near = Coordinates(latitude, longitude)
    try:
        games = await manager.list_games(
            sport=sport,
            skill_level=skill_level,
            status=status,
            near=near,
            radius_meters=radius_meters,
        )
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error listing games: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error listing games")

    return [
        build_game_response(
            manager,
            game,
            calculate_distance_meters(near, game.location.coordinates) if near else None,
        )
        for game in games
    ]


@router.get("/api/games/{game_id}", response_model=GameResponse)
async def get_game(game_id: str, manager: GameLifecycleManager = Depends(get_game_manager)):
    """Get a single game."""
    try:
        game = await manager.get_game(game_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error fetching game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error fetching game")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/join", response_model=GameResponse)
@limiter.limit("30/minute")
async def join_game(
    request: Request,
    game_id: str,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Join an open game."""
    try:
        game = await manager.join_game(game_id, player.id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error joining game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error joining game")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/leave", response_model=GameResponse)
@limiter.limit("30/minute")
async def leave_game(
    request: Request,
    game_id: str,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Leave a game you joined (hosts cancel instead)."""
    try:
        game = await manager.leave_game(game_id, player.id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error leaving game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error leaving game")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/check-in", response_model=GameResponse)
@limiter.limit("30/minute")
async def check_in(
    request: Request,
    game_id: str,
    payload: CheckInRequest,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Check in with the device's reported position."""
    provider = ReportedPositionProvider(payload.latitude, payload.longitude, payload.error)
    try:
        game = await manager.check_in(game_id, player.id, position_provider=provider)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error checking in to game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error checking in")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/start", response_model=StartGameResponse)
async def start_game(
    game_id: str,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Start the game (host only). Players who didn't check in are penalized."""
    try:
        result = await manager.start_game(game_id, player.id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error starting game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error starting game")
    return StartGameResponse(
        game=build_game_response(manager, result.game),
        penalized=result.penalized,
        penalty_failures=result.penalty_failures,
    )


@router.post("/api/games/{game_id}/results", response_model=GameResponse)
async def submit_results(
    game_id: str,
    payload: SubmitResultsRequest,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Submit the final score (host only)."""
    try:
        game = await manager.submit_results(
            game_id,
            player.id,
            payload.team1,
            payload.team2,
            payload.team1_score,
            payload.team2_score,
        )
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error submitting results for game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error submitting results")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/confirm", response_model=GameResponse)
async def confirm_results(
    game_id: str,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Confirm the submitted score. The majority confirmation commits ratings."""
    try:
        game = await manager.confirm_results(game_id, player.id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error confirming results for game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error confirming results")
    return build_game_response(manager, game)


@router.post("/api/games/{game_id}/cancel", response_model=GameResponse)
async def cancel_game(
    game_id: str,
    player: PlayerProfile = Depends(require_player),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Cancel the game (host only)."""
    try:
        game = await manager.cancel_game(game_id, player.id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error cancelling game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error cancelling game")
    return build_game_response(manager, game)


@router.websocket("/api/ws/games/{game_id}")
async def websocket_game_updates(
    websocket: WebSocket,
    game_id: str,
    persistence: Persistence = Depends(get_persistence),
):
    """
    WebSocket endpoint pushing a game snapshot after every committed change.

    Requires the player token in query parameter: ?token=<player_id>
    """
    await websocket.accept()

    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008, reason="Missing authentication token")
        return

    game = await persistence.get_game(game_id)
    if game is None:
        await websocket.close(code=1008, reason="Game not found")
        return

    manager = get_websocket_manager()
    await manager.connect(game_id, websocket, persistence)

    try:
        # Current state first so clients don't wait for the next change
        await websocket.send_json(game_update_message(game))

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS
                )
                await manager.update_activity(websocket)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_text("ping")
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for game {game_id}")
    except Exception as e:
        logger.error(f"WebSocket error for game {game_id}: {e}")
    finally:
        await manager.disconnect(game_id, websocket)
