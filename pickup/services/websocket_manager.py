"""
WebSocket connection manager for live game updates.

Manages active WebSocket connections per game. The first connection for a
game subscribes to the persistence change feed; every committed write to
that game is pushed to all of its connections as a snapshot.
"""

import asyncio
import json
import logging
from typing import Callable, Dict, Set, Optional
from datetime import datetime, timedelta
from fastapi import WebSocket

from pickup.database.persistence import Persistence
from pickup.models.domain import Game
from pickup.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = 30


def game_update_message(game: Game) -> dict:
    """Message pushed to clients when a game changes."""
    return {"type": "game_update", "data": game.model_dump(mode="json")}


class WebSocketManager:
    """Manages WebSocket connections watching individual games."""

    def __init__(self):
        # Dictionary mapping game_id to set of active WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Dictionary mapping WebSocket to last activity timestamp
        self.connection_timestamps: Dict[WebSocket, datetime] = {}
        # Change feed unsubscribe functions, one per watched game
        self._unsubscribers: Dict[str, Callable[[], None]] = {}
        self._lock = asyncio.Lock()

    async def connect(
        self, game_id: str, websocket: WebSocket, persistence: Optional[Persistence] = None
    ):
        """
        Register a WebSocket connection watching a game.

        Args:
            game_id: ID of the game
            websocket: WebSocket connection object
            persistence: Change feed source; subscribed on the game's first connection
        """
        async with self._lock:
            if game_id not in self.active_connections:
                self.active_connections[game_id] = set()
            self.active_connections[game_id].add(websocket)
            self.connection_timestamps[websocket] = utcnow()
            if persistence is not None and game_id not in self._unsubscribers:
                self._unsubscribers[game_id] = persistence.subscribe(game_id, self.broadcast_game)
            logger.info(f"WebSocket connected for game {game_id} (total connections: {len(self.active_connections[game_id])})")

    async def disconnect(self, game_id: str, websocket: WebSocket):
        """
        Remove a WebSocket connection; the last one for a game drops the feed subscription.

        Args:
            game_id: ID of the game
            websocket: WebSocket connection object
        """
        async with self._lock:
            if game_id in self.active_connections:
                self.active_connections[game_id].discard(websocket)
                if not self.active_connections[game_id]:
                    del self.active_connections[game_id]
            if game_id not in self.active_connections:
                unsubscribe = self._unsubscribers.pop(game_id, None)
                if unsubscribe is not None:
                    unsubscribe()
            self.connection_timestamps.pop(websocket, None)
            logger.info(f"WebSocket disconnected for game {game_id}")

    async def send_to_game(self, game_id: str, message: dict) -> bool:
        """
        Send a message to every connection watching a game.

        Returns:
            True if message was sent to at least one connection, False otherwise
        """
        async with self._lock:
            if game_id not in self.active_connections:
                return False
            connections = self.active_connections[game_id].copy()

        # Send outside the lock so a slow client doesn't block others
        sent = False
        disconnected_connections = []
        message_json = json.dumps(message)

        for websocket in connections:
            try:
                await websocket.send_text(message_json)
                async with self._lock:
                    self.connection_timestamps[websocket] = utcnow()
                sent = True
            except Exception as e:
                logger.warning(f"Error sending WebSocket message for game {game_id}: {e}")
                disconnected_connections.append(websocket)

        for websocket in disconnected_connections:
            await self.disconnect(game_id, websocket)

        return sent

    async def broadcast_game(self, game: Game) -> bool:
        """Push a game snapshot to everyone watching it."""
        return await self.send_to_game(game.id, game_update_message(game))

    async def get_connection_count(self, game_id: str) -> int:
        async with self._lock:
            return len(self.active_connections.get(game_id, ()))

    async def update_activity(self, websocket: WebSocket):
        """
        Update the last activity timestamp for a WebSocket connection.
        Called when receiving ping or other messages from client.
        """
        async with self._lock:
            if websocket in self.connection_timestamps:
                self.connection_timestamps[websocket] = utcnow()

    async def cleanup_stale_connections(self):
        """
        Disconnect connections that haven't had activity within the timeout period.
        """
        timeout_threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)

        stale = []
        async with self._lock:
            for game_id, connections in self.active_connections.items():
                for websocket in connections:
                    last_activity = self.connection_timestamps.get(websocket)
                    if last_activity is not None and last_activity < timeout_threshold:
                        stale.append((game_id, websocket))

        for game_id, websocket in stale:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing stale connection for game {game_id}: {e}")
            await self.disconnect(game_id, websocket)
            logger.info(f"Cleaned up stale WebSocket connection for game {game_id}")


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
