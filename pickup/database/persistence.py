"""
Persistence contract used by the lifecycle manager.

Adapters implement single-entity reads, an atomic multi-entity transaction
with optimistic isolation, a few list queries, follow edges, and a
change feed that publishes every committed game write.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Set, Union

from pickup.models.domain import (
    Game,
    GameStatus,
    PlayerProfile,
    RatingChange,
    SkillLevel,
    Sport,
)

logger = logging.getLogger(__name__)

GameCallback = Callable[[Game], Union[None, Awaitable[None]]]


class ChangeFeed:
    """In-process publish/subscribe for committed game snapshots."""

    def __init__(self):
        self._subscribers: Dict[str, Set[GameCallback]] = {}

    def subscribe(self, game_id: str, callback: GameCallback) -> Callable[[], None]:
        """
        Register a callback for changes to one game.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.setdefault(game_id, set()).add(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(game_id)
            if callbacks is None:
                return
            callbacks.discard(callback)
            if not callbacks:
                del self._subscribers[game_id]

        return unsubscribe

    def subscriber_count(self, game_id: str) -> int:
        return len(self._subscribers.get(game_id, ()))

    async def publish(self, game: Game) -> None:
        """Deliver a snapshot to every subscriber; a failing subscriber never blocks the rest."""
        for callback in list(self._subscribers.get(game.id, ())):
            try:
                result = callback(game)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Change subscriber for game {game.id} failed: {e}")


class Transaction(ABC):
    """
    Unit of work. Reads record the version they saw; writes are staged and
    applied all-or-nothing when the transaction exits without error.

    A transaction that stages any write is validated against its whole read
    set: an entity that was only read (e.g. a profile checked against a
    rating gate) must also be unchanged at commit.
    """

    @abstractmethod
    async def get_game(self, game_id: str) -> Optional[Game]:
        ...

    @abstractmethod
    async def get_player(self, player_id: str) -> Optional[PlayerProfile]:
        ...

    @abstractmethod
    def add_game(self, game: Game) -> None:
        """Stage an insert of a new game."""

    @abstractmethod
    def add_player(self, profile: PlayerProfile) -> None:
        """Stage an insert of a new profile."""

    @abstractmethod
    def save_game(self, game: Game) -> None:
        """Stage an update; game.version must be the version that was read."""

    @abstractmethod
    def save_player(self, profile: PlayerProfile) -> None:
        """Stage an update; profile.version must be the version that was read."""

    @abstractmethod
    def add_rating_change(self, change: RatingChange) -> None:
        """Stage a rating history record."""


class Persistence(ABC):
    """Storage boundary for games, profiles, rating history and follow edges."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Transaction]:
        """
        Open a transaction.

        Raises (on exit):
            TransactionConflictError: an entity read or saved in the
                transaction was modified concurrently, or the database aborted
                it over a lock conflict; nothing was written
        """

    async def get_game(self, game_id: str) -> Optional[Game]:
        async with self.transaction() as tx:
            return await tx.get_game(game_id)

    async def get_player(self, player_id: str) -> Optional[PlayerProfile]:
        async with self.transaction() as tx:
            return await tx.get_player(player_id)

    @abstractmethod
    async def list_games(
        self,
        sport: Optional[Sport] = None,
        skill_level: Optional[SkillLevel] = None,
        status: Optional[GameStatus] = None,
    ) -> List[Game]:
        """Games matching the filters, earliest start first."""

    @abstractmethod
    async def list_completed_games(self, player_id: str) -> List[Game]:
        """Completed games the player joined, most recent start first."""

    @abstractmethod
    async def list_rating_changes(self, player_id: str) -> List[RatingChange]:
        """Rating history records for a player, oldest first."""

    @abstractmethod
    async def add_follow(self, follower_id: str, following_id: str) -> bool:
        """Create a follow edge. Returns False if it already existed."""

    @abstractmethod
    async def remove_follow(self, follower_id: str, following_id: str) -> bool:
        """Delete a follow edge. Returns False if there was none."""

    @abstractmethod
    async def list_following(self, player_id: str) -> List[str]:
        ...

    @abstractmethod
    async def list_followers(self, player_id: str) -> List[str]:
        ...

    @abstractmethod
    async def is_following(self, follower_id: str, following_id: str) -> bool:
        ...

    def subscribe(self, game_id: str, callback: GameCallback) -> Callable[[], None]:
        """Subscribe to committed changes of one game."""
        return self.feed.subscribe(game_id, callback)
