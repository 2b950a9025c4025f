"""Operator route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from pickup.api.auth_dependencies import get_game_manager, require_operator
from pickup.api.routes import build_game_response, game_error_to_http
from pickup.models.schemas import GameResponse
from pickup.services.game_service import GameLifecycleManager
from pickup.utils.exceptions import GameError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/admin/games/{game_id}/cancel", response_model=GameResponse)
async def operator_cancel_game(
    game_id: str,
    operator_id: str = Depends(require_operator),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Cancel an open or in-progress game on behalf of its host."""
    try:
        game = await manager.cancel_game(game_id, operator_id, operator=True)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error cancelling game {game_id} as operator: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error cancelling game")
    return build_game_response(manager, game)


@router.post("/api/admin/games/{game_id}/retry-commit", response_model=GameResponse)
async def retry_rating_commit(
    game_id: str,
    operator_id: str = Depends(require_operator),
    manager: GameLifecycleManager = Depends(get_game_manager),
):
    """Re-run the rating commit for a game stuck in pending_results."""
    try:
        game = await manager.retry_rating_commit(game_id)
    except GameError as e:
        raise game_error_to_http(e)
    except Exception as e:
        logger.error(f"Error retrying rating commit for game {game_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error retrying rating commit")
    logger.info(f"Operator {operator_id} retried rating commit for game {game_id}")
    return build_game_response(manager, game)
