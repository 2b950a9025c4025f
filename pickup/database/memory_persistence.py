"""
Process-local persistence with the same optimistic isolation as the SQL adapter.

Records are stored as plain JSON-compatible dicts and decoded on every read,
so callers never share mutable state with the store. Every read yields to
the event loop, which lets concurrent operations interleave the way they do
against a real database.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from pickup.database.persistence import ChangeFeed, Persistence, Transaction
from pickup.models.domain import (
    FriendConnection,
    Game,
    GameStatus,
    PlayerProfile,
    RatingChange,
    SkillLevel,
    Sport,
)
from pickup.utils.exceptions import CorruptRecordError, TransactionConflictError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _decode(model: Type[ModelT], record: dict) -> ModelT:
    try:
        return model.model_validate(record)
    except SchemaError as e:
        raise CorruptRecordError(f"Invalid {model.__name__} record: {e}") from e


def _encode(value: BaseModel) -> dict:
    return value.model_dump(mode="json")


class MemoryTransaction(Transaction):
    """Staged writes against a MemoryPersistence store."""

    def __init__(self, store: "MemoryPersistence"):
        self._store = store
        self._new_games: Dict[str, Game] = {}
        self._new_players: Dict[str, PlayerProfile] = {}
        self._game_updates: Dict[str, Game] = {}
        self._player_updates: Dict[str, PlayerProfile] = {}
        self._rating_changes: List[RatingChange] = []
        # First version seen for every existing entity read, keyed by id
        self._game_reads: Dict[str, int] = {}
        self._player_reads: Dict[str, int] = {}

    async def get_game(self, game_id: str) -> Optional[Game]:
        await asyncio.sleep(0)
        record = self._store._games.get(game_id)
        if record is None:
            return None
        self._game_reads.setdefault(game_id, record["version"])
        return _decode(Game, record)

    async def get_player(self, player_id: str) -> Optional[PlayerProfile]:
        await asyncio.sleep(0)
        record = self._store._players.get(player_id)
        if record is None:
            return None
        self._player_reads.setdefault(player_id, record["version"])
        return _decode(PlayerProfile, record)

    def add_game(self, game: Game) -> None:
        self._new_games[game.id] = game

    def add_player(self, profile: PlayerProfile) -> None:
        self._new_players[profile.id] = profile

    def save_game(self, game: Game) -> None:
        self._game_updates[game.id] = game

    def save_player(self, profile: PlayerProfile) -> None:
        self._player_updates[profile.id] = profile

    def add_rating_change(self, change: RatingChange) -> None:
        self._rating_changes.append(change)

    @property
    def has_writes(self) -> bool:
        return bool(
            self._new_games or self._new_players or self._game_updates
            or self._player_updates or self._rating_changes
        )

    @staticmethod
    def _check_reads(kind: str, records: Dict[str, dict], reads: Dict[str, int]) -> None:
        for entity_id, version in reads.items():
            current = records.get(entity_id)
            if current is None or current["version"] != version:
                raise TransactionConflictError(f"{kind} {entity_id} was modified concurrently")

    def _check_versions(self) -> None:
        for game_id in self._new_games:
            if game_id in self._store._games:
                raise TransactionConflictError(f"Game {game_id} already exists")
        for player_id in self._new_players:
            if player_id in self._store._players:
                raise TransactionConflictError(f"Player {player_id} already exists")
        for game in self._game_updates.values():
            current = self._store._games.get(game.id)
            if current is None or current["version"] != game.version:
                raise TransactionConflictError(f"Game {game.id} was modified concurrently")
        for profile in self._player_updates.values():
            current = self._store._players.get(profile.id)
            if current is None or current["version"] != profile.version:
                raise TransactionConflictError(
                    f"Player {profile.id} was modified concurrently"
                )
        recorded = {(c.game_id, c.player_id) for c in self._store._rating_changes}
        for change in self._rating_changes:
            if (change.game_id, change.player_id) in recorded:
                raise TransactionConflictError(
                    f"Rating change for player {change.player_id} in game "
                    f"{change.game_id} already recorded"
                )
        self._check_reads("Game", self._store._games, self._game_reads)
        self._check_reads("Player", self._store._players, self._player_reads)

    async def commit(self) -> List[Game]:
        """
        Validate every staged write and every entity read, then apply the
        writes. Returns changed games. A transaction that wrote nothing
        commits trivially.
        """
        if not self.has_writes:
            return []
        async with self._store._lock:
            self._check_versions()

            for game in self._new_games.values():
                self._store._games[game.id] = _encode(game)
            for profile in self._new_players.values():
                self._store._players[profile.id] = _encode(profile)
            for game in self._game_updates.values():
                game.version += 1
                self._store._games[game.id] = _encode(game)
            for profile in self._player_updates.values():
                profile.version += 1
                self._store._players[profile.id] = _encode(profile)
            self._store._rating_changes.extend(self._rating_changes)

        return list(self._new_games.values()) + list(self._game_updates.values())


class MemoryPersistence(Persistence):
    """Dict-backed persistence for local runs and tests."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self._games: Dict[str, dict] = {}
        self._players: Dict[str, dict] = {}
        self._rating_changes: List[RatingChange] = []
        self._follows: Dict[Tuple[str, str], FriendConnection] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        tx = MemoryTransaction(self)
        yield tx
        changed = await tx.commit()
        for game in changed:
            await self.feed.publish(game)

    async def list_games(
        self,
        sport: Optional[Sport] = None,
        skill_level: Optional[SkillLevel] = None,
        status: Optional[GameStatus] = None,
    ) -> List[Game]:
        games = [_decode(Game, record) for record in self._games.values()]
        if sport is not None:
            games = [g for g in games if g.sport == sport]
        if skill_level is not None:
            games = [g for g in games if g.skill_level == skill_level]
        if status is not None:
            games = [g for g in games if g.status == status]
        return sorted(games, key=lambda g: g.start_time)

    async def list_completed_games(self, player_id: str) -> List[Game]:
        games = await self.list_games(status=GameStatus.COMPLETED)
        games = [g for g in games if player_id in g.players]
        return sorted(games, key=lambda g: g.start_time, reverse=True)

    async def list_rating_changes(self, player_id: str) -> List[RatingChange]:
        changes = [c for c in self._rating_changes if c.player_id == player_id]
        return sorted(changes, key=lambda c: c.created_at)

    async def add_follow(self, follower_id: str, following_id: str) -> bool:
        key = (follower_id, following_id)
        if key in self._follows:
            return False
        self._follows[key] = FriendConnection(follower_id=follower_id, following_id=following_id)
        return True

    async def remove_follow(self, follower_id: str, following_id: str) -> bool:
        return self._follows.pop((follower_id, following_id), None) is not None

    async def list_following(self, player_id: str) -> List[str]:
        return [following for follower, following in self._follows if follower == player_id]

    async def list_followers(self, player_id: str) -> List[str]:
        return [follower for follower, following in self._follows if following == player_id]

    async def is_following(self, follower_id: str, following_id: str) -> bool:
        return (follower_id, following_id) in self._follows
