"""
SQLAlchemy-backed persistence.

Rows are decoded into domain models at this boundary. Updates are guarded by
the row's version column: an UPDATE that matches zero rows means another
transaction committed first, and the whole unit of work is rolled back.
Rows that were only read are share-locked and version-checked at commit.
Rows are locked in id order; a deadlock or serialization failure reported
by Postgres surfaces as TransactionConflictError like any other lost race.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from sqlalchemy import select, update, delete
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pickup.database import models
from pickup.database.db import AsyncSessionLocal
from pickup.database.persistence import ChangeFeed, Persistence, Transaction
from pickup.models.domain import (
    Game,
    GameStatus,
    PlayerProfile,
    RatingChange,
    SkillLevel,
    Sport,
)
from pickup.utils.exceptions import CorruptRecordError, TransactionConflictError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_lock_conflict(error: DBAPIError) -> bool:
    """True when Postgres aborted the transaction over a concurrent writer."""
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is None and orig is not None:
        # asyncpg's exception sits behind SQLAlchemy's DBAPI adapter
        sqlstate = getattr(orig.__cause__, "sqlstate", None)
    return sqlstate in RETRYABLE_SQLSTATES


# ============================================================================
# Row <-> domain conversion
# ============================================================================

def _decode(model: Type[ModelT], record: dict) -> ModelT:
    try:
        return model.model_validate(record)
    except SchemaError as e:
        raise CorruptRecordError(f"Invalid {model.__name__} record: {e}") from e


def game_from_row(row: models.Game) -> Game:
    recurrence = None
    if row.recurrence_frequency:
        recurrence = {
            "frequency": row.recurrence_frequency,
            "day_of_week": row.recurrence_day_of_week,
            "parent_game_id": row.parent_game_id,
        }
    return _decode(Game, {
        "id": row.id,
        "host_id": row.host_id,
        "sport": row.sport,
        "location": {
            "latitude": row.latitude,
            "longitude": row.longitude,
            "address": row.address,
            "name": row.location_name,
        },
        "start_time": row.start_time,
        "duration_minutes": row.duration_minutes,
        "max_players": row.max_players,
        "skill_level": row.skill_level,
        "min_rating": row.min_rating,
        "players": row.players or [],
        "checked_in": row.checked_in or [],
        "status": row.status,
        "results": row.results,
        "recurrence": recurrence,
        "created_at": row.created_at,
        "version": row.version,
    })


def game_values(game: Game) -> dict:
    """Column values for a game (everything except id and version)."""
    recurrence = game.recurrence
    return {
        "host_id": game.host_id,
        "sport": game.sport.value,
        "location_name": game.location.name,
        "address": game.location.address,
        "latitude": game.location.latitude,
        "longitude": game.location.longitude,
        "start_time": game.start_time,
        "duration_minutes": game.duration_minutes,
        "max_players": game.max_players,
        "skill_level": game.skill_level.value,
        "min_rating": game.min_rating,
        "players": list(game.players),
        "checked_in": list(game.checked_in),
        "status": game.status.value,
        "results": game.results.model_dump(mode="json") if game.results else None,
        "recurrence_frequency": recurrence.frequency.value if recurrence else None,
        "recurrence_day_of_week": recurrence.day_of_week if recurrence else None,
        "parent_game_id": recurrence.parent_game_id if recurrence else None,
        "created_at": game.created_at,
    }


def player_from_row(row: models.Player) -> PlayerProfile:
    return _decode(PlayerProfile, {
        "id": row.id,
        "display_name": row.display_name,
        "email": row.email,
        "ratings": {
            Sport.BASKETBALL.value: row.basketball_rating,
            Sport.SOCCER.value: row.soccer_rating,
        },
        "reliability_score": row.reliability_score,
        "games_played": row.games_played,
        "games_attended": row.games_attended,
        "created_at": row.created_at,
        "version": row.version,
    })


def player_values(profile: PlayerProfile) -> dict:
    """Column values for a profile (everything except id and version)."""
    return {
        "display_name": profile.display_name,
        "email": profile.email,
        "basketball_rating": profile.rating_for(Sport.BASKETBALL),
        "soccer_rating": profile.rating_for(Sport.SOCCER),
        "reliability_score": profile.reliability_score,
        "games_played": profile.games_played,
        "games_attended": profile.games_attended,
        "created_at": profile.created_at,
    }


def rating_change_from_row(row: models.RatingHistory) -> RatingChange:
    return _decode(RatingChange, {
        "game_id": row.game_id,
        "player_id": row.player_id,
        "sport": row.sport,
        "rating_before": row.rating_before,
        "rating_after": row.rating_after,
        "rating_change": row.rating_change,
        "created_at": row.created_at,
    })


# ============================================================================
# Transaction
# ============================================================================

class SqlTransaction(Transaction):
    """Unit of work over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._new_games: Dict[str, Game] = {}
        self._new_players: Dict[str, PlayerProfile] = {}
        self._game_updates: Dict[str, Game] = {}
        self._player_updates: Dict[str, PlayerProfile] = {}
        self._rating_changes: List[RatingChange] = []
        # First version seen for every existing row read, keyed by id
        self._game_reads: Dict[str, int] = {}
        self._player_reads: Dict[str, int] = {}

    async def get_game(self, game_id: str) -> Optional[Game]:
        result = await self.session.execute(
            select(models.Game).where(models.Game.id == game_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        self._game_reads.setdefault(game_id, row.version)
        return game_from_row(row)

    async def get_player(self, player_id: str) -> Optional[PlayerProfile]:
        result = await self.session.execute(
            select(models.Player).where(models.Player.id == player_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        self._player_reads.setdefault(player_id, row.version)
        return player_from_row(row)

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

    async def _apply_versioned_update(self, model, entity_id: str, version: int, values: dict):
        result = await self.session.execute(
            update(model)
            .where(model.id == entity_id, model.version == version)
            .values(**values, version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflictError(
                f"{model.__name__} {entity_id} was modified concurrently"
            )

    async def _check_unchanged(self, model, entity_id: str, version: int) -> None:
        """Share-lock a row that was only read and verify its version."""
        result = await self.session.execute(
            select(model.version).where(model.id == entity_id).with_for_update(read=True)
        )
        if result.scalar_one_or_none() != version:
            raise TransactionConflictError(
                f"{model.__name__} {entity_id} was modified concurrently"
            )

    async def _lock_rows(self, model, updates: dict, reads: Dict[str, int], values) -> None:
        # Ascending id order for every lock
        for entity_id in sorted(set(updates) | set(reads)):
            entity = updates.get(entity_id)
            if entity is not None:
                await self._apply_versioned_update(
                    model, entity_id, entity.version, values(entity)
                )
            else:
                await self._check_unchanged(model, entity_id, reads[entity_id])

    @property
    def has_writes(self) -> bool:
        return bool(
            self._new_games or self._new_players or self._game_updates
            or self._player_updates or self._rating_changes
        )

    async def commit(self) -> List[Game]:
        """Write every staged change and commit. Returns changed games."""
        if not self.has_writes:
            await self.session.commit()
            return []

        # Players first so new games can reference their host
        for profile in self._new_players.values():
            self.session.add(
                models.Player(id=profile.id, version=profile.version, **player_values(profile))
            )
        for game in self._new_games.values():
            self.session.add(
                models.Game(id=game.id, version=game.version, **game_values(game))
            )
        await self.session.flush()

        await self._lock_rows(models.Player, self._player_updates, self._player_reads, player_values)
        await self._lock_rows(models.Game, self._game_updates, self._game_reads, game_values)

        for change in self._rating_changes:
            self.session.add(models.RatingHistory(
                game_id=change.game_id,
                player_id=change.player_id,
                sport=change.sport.value,
                rating_before=change.rating_before,
                rating_after=change.rating_after,
                rating_change=change.rating_change,
                created_at=change.created_at,
            ))
        await self.session.flush()
        await self.session.commit()

        for profile in self._player_updates.values():
            profile.version += 1
        for game in self._game_updates.values():
            game.version += 1
        return list(self._new_games.values()) + list(self._game_updates.values())


# ============================================================================
# Persistence
# ============================================================================

class SqlPersistence(Persistence):
    """Persistence over an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        feed: Optional[ChangeFeed] = None,
    ):
        super().__init__(feed)
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self):
        async with self.session_factory() as session:
            tx = SqlTransaction(session)
            try:
                yield tx
                changed = await tx.commit()
            except IntegrityError as e:
                await session.rollback()
                raise TransactionConflictError(f"Write rejected by a concurrent change: {e.orig}") from e
            except DBAPIError as e:
                await session.rollback()
                if is_lock_conflict(e):
                    raise TransactionConflictError(
                        f"Transaction aborted by a concurrent change: {e.orig}"
                    ) from e
                raise
            except Exception:
                await session.rollback()
                raise
        for game in changed:
            await self.feed.publish(game)

    async def list_games(
        self,
        sport: Optional[Sport] = None,
        skill_level: Optional[SkillLevel] = None,
        status: Optional[GameStatus] = None,
    ) -> List[Game]:
        query = select(models.Game)
        if sport is not None:
            query = query.where(models.Game.sport == Sport(sport).value)
        if skill_level is not None:
            query = query.where(models.Game.skill_level == SkillLevel(skill_level).value)
        if status is not None:
            query = query.where(models.Game.status == GameStatus(status).value)
        query = query.order_by(models.Game.start_time.asc())

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [game_from_row(row) for row in result.scalars().all()]

    async def list_completed_games(self, player_id: str) -> List[Game]:
        # Membership lives in a JSON column; filter in Python to stay dialect-neutral
        query = (
            select(models.Game)
            .where(models.Game.status == GameStatus.COMPLETED.value)
            .order_by(models.Game.start_time.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
        return [game_from_row(row) for row in rows if player_id in (row.players or [])]

    async def list_rating_changes(self, player_id: str) -> List[RatingChange]:
        query = (
            select(models.RatingHistory)
            .where(models.RatingHistory.player_id == player_id)
            .order_by(models.RatingHistory.created_at.asc(), models.RatingHistory.id.asc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [rating_change_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------------
    # Follow edges
    # ------------------------------------------------------------------------

    async def add_follow(self, follower_id: str, following_id: str) -> bool:
        if await self.is_following(follower_id, following_id):
            return False
        async with self.session_factory() as session:
            session.add(models.Friend(follower_id=follower_id, following_id=following_id))
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with an identical follow
                await session.rollback()
                return False
        return True

    async def remove_follow(self, follower_id: str, following_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(models.Friend).where(
                    models.Friend.follower_id == follower_id,
                    models.Friend.following_id == following_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def list_following(self, player_id: str) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.Friend.following_id)
                .where(models.Friend.follower_id == player_id)
                .order_by(models.Friend.id.asc())
            )
            return list(result.scalars().all())

    async def list_followers(self, player_id: str) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.Friend.follower_id)
                .where(models.Friend.following_id == player_id)
                .order_by(models.Friend.id.asc())
            )
            return list(result.scalars().all())

    async def is_following(self, follower_id: str, following_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.Friend.id).where(
                    models.Friend.follower_id == follower_id,
                    models.Friend.following_id == following_id,
                )
            )
            return result.scalar_one_or_none() is not None
