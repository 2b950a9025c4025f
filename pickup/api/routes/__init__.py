"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, error translation, response builders) lives
here; every sub-router imports what it needs from this package.
"""

import os
from typing import Optional

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

from pickup.models.domain import Game
from pickup.models.schemas import GameResponse
from pickup.utils.exceptions import GameError, GeofenceError, PositionError

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def game_error_to_http(e: GameError) -> HTTPException:
    """Translate a lifecycle error into the HTTP error the client sees."""
    detail = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, GeofenceError):
        detail["distance_meters"] = round(e.distance_meters)
        detail["radius_meters"] = e.radius_meters
    elif isinstance(e, PositionError):
        detail["reason"] = e.reason.value
    return HTTPException(status_code=e.status_code, detail=detail)


def build_game_response(manager, game: Game, distance_meters: Optional[float] = None) -> GameResponse:
    """Game plus its current check-in window state."""
    check_in = manager.check_in_status(game)
    return GameResponse(
        **game.model_dump(),
        check_in_window_open=check_in.window_open,
        check_in_opens_in_ms=check_in.opens_in_ms,
        distance_meters=distance_meters,
    )


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from pickup.api.routes.players import router as players_router  # noqa: E402
from pickup.api.routes.games import router as games_router  # noqa: E402
from pickup.api.routes.friends import router as friends_router  # noqa: E402
from pickup.api.routes.admin import router as admin_router  # noqa: E402

router = APIRouter()
router.include_router(players_router)
router.include_router(games_router)
router.include_router(friends_router)
router.include_router(admin_router)
