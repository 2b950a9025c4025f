"""
Pickup Games API Server

FastAPI server for creating, joining and checking in to pickup games,
confirming scores and tracking player ratings.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from pickup.api.routes import router, limiter as routes_limiter
from pickup.database import db
from pickup.database.sql_persistence import SqlPersistence
from pickup.services.game_service import GameLifecycleManager
from pickup.utils.constants import CHECK_IN_RADIUS_METERS, CHECK_IN_WINDOW_MINUTES

# LOG_LEVEL controls verbosity (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _log_background_error(game_id: str, error: Exception) -> None:
    logger.error(f"Background task for game {game_id} failed: {error}")


def create_game_manager(persistence) -> GameLifecycleManager:
    """Lifecycle manager configured from the environment."""
    return GameLifecycleManager(
        persistence,
        check_in_radius_meters=float(
            os.getenv("CHECK_IN_RADIUS_METERS", str(CHECK_IN_RADIUS_METERS))
        ),
        check_in_window_minutes=float(
            os.getenv("CHECK_IN_WINDOW_MINUTES", str(CHECK_IN_WINDOW_MINUTES))
        ),
        on_background_error=_log_background_error,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Pickup Games API...")

    # Tables missing from the migrations are created here
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        # Keep serving; requests will surface the database error

    persistence = SqlPersistence(db.AsyncSessionLocal)
    app.state.persistence = persistence
    app.state.game_manager = create_game_manager(persistence)

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Pickup Games API...")

    # Let recurring-game spawns finish before the engine goes away
    try:
        await app.state.game_manager.wait_for_background_tasks()
    except Exception as e:
        logger.error(f"Error waiting for background tasks: {e}", exc_info=True)

    await db.engine.dispose()


app = FastAPI(
    title="Pickup Games API",
    description="API for organizing pickup games with geofenced check-in and Elo ratings",
    version="1.0.0",
    lifespan=lifespan,
)

# Shared slowapi limiter (no-op under ENV=test)
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ALLOWED_ORIGINS is a comma-separated list
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# /api routes and the game websocket
app.include_router(router)


@app.get("/api/health")
async def health():
    """Health check."""
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
