"""
Tests for the SQLAlchemy persistence adapter.

Runs against TEST_DATABASE_URL when set, otherwise a throwaway SQLite file
(see conftest.py).
"""

from datetime import datetime, timedelta

import pytest
import pytz
from sqlalchemy.exc import DBAPIError

from pickup.database import models
from pickup.database.sql_persistence import SqlPersistence, SqlTransaction, is_lock_conflict
from pickup.models.domain import (
    Game,
    GameLocation,
    GameStatus,
    PlayerProfile,
    RatingChange,
    Recurrence,
    Sport,
)
from pickup.services import player_service
from pickup.services.game_service import GameLifecycleManager
from pickup.services.position_service import PositionProvider
from pickup.utils.exceptions import CorruptRecordError, StateError, TransactionConflictError
from pickup.utils.geo_utils import Coordinates

START = datetime(2026, 6, 1, 14, 0, tzinfo=pytz.UTC)


@pytest.fixture
def sql_persistence(session_factory):
    return SqlPersistence(session_factory)


async def _add_player(persistence, player_id, **fields):
    profile = PlayerProfile(id=player_id, display_name=player_id.title(), **fields)
    async with persistence.transaction() as tx:
        tx.add_player(profile)
    return profile


def _game(game_id, host_id="host", **fields):
    params = dict(
        id=game_id,
        host_id=host_id,
        sport=Sport.BASKETBALL,
        location=GameLocation(latitude=40.7128, longitude=-74.0060, address="1 Court St", name="Rucker Park"),
        start_time=START,
        duration_minutes=60,
        max_players=10,
        skill_level="casual",
        players=[host_id],
    )
    params.update(fields)
    return Game(**params)


async def _add_game(persistence, game):
    async with persistence.transaction() as tx:
        tx.add_game(game)
    return game


# ──────────────────────────────────────────────────────────────
# Games and profiles
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_game_round_trip(sql_persistence):
    await _add_player(sql_persistence, "host")
    game = _game(
        "g1",
        min_rating=1100,
        recurrence=Recurrence(frequency="weekly", day_of_week=START.weekday()),
    )
    await _add_game(sql_persistence, game)

    stored = await sql_persistence.get_game("g1")

    assert stored.host_id == "host"
    assert stored.sport == Sport.BASKETBALL
    assert stored.location == game.location
    assert stored.start_time == START
    assert stored.start_time.tzinfo is not None
    assert stored.players == ["host"]
    assert stored.min_rating == 1100
    assert stored.recurrence.frequency == "weekly"
    assert stored.recurrence.day_of_week == START.weekday()
    assert stored.recurrence.parent_game_id is None
    assert stored.results is None
    assert stored.version == 0


@pytest.mark.asyncio
async def test_missing_records_return_none(sql_persistence):
    assert await sql_persistence.get_game("missing") is None
    assert await sql_persistence.get_player("missing") is None


@pytest.mark.asyncio
async def test_profile_round_trip(sql_persistence):
    await _add_player(sql_persistence, "p1", email="p1@example.com", reliability_score=90)

    stored = await sql_persistence.get_player("p1")

    assert stored.display_name == "P1"
    assert stored.email == "p1@example.com"
    assert stored.rating_for(Sport.BASKETBALL) == 1200
    assert stored.rating_for(Sport.SOCCER) == 1200
    assert stored.reliability_score == 90
    assert stored.version == 0


@pytest.mark.asyncio
async def test_update_bumps_version(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_game(sql_persistence, _game("g1"))

    async with sql_persistence.transaction() as tx:
        game = await tx.get_game("g1")
        game.players.append("p1")
        tx.save_game(game)
    assert game.version == 1

    stored = await sql_persistence.get_game("g1")
    assert stored.players == ["host", "p1"]
    assert stored.version == 1


@pytest.mark.asyncio
async def test_stale_write_conflicts_and_rolls_back(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_player(sql_persistence, "p1")
    await _add_game(sql_persistence, _game("g1"))
    stale_game = await sql_persistence.get_game("g1")
    stale_player = await sql_persistence.get_player("p1")

    async with sql_persistence.transaction() as tx:
        fresh = await tx.get_game("g1")
        fresh.status = GameStatus.CANCELLED
        tx.save_game(fresh)

    with pytest.raises(TransactionConflictError):
        async with sql_persistence.transaction() as tx:
            stale_player.games_played += 1
            tx.save_player(stale_player)
            stale_game.players.append("p1")
            tx.save_game(stale_game)

    # Nothing from the failed transaction was written
    assert (await sql_persistence.get_player("p1")).games_played == 0
    stored = await sql_persistence.get_game("g1")
    assert stored.status == GameStatus.CANCELLED
    assert stored.players == ["host"]


@pytest.mark.asyncio
async def test_row_read_but_not_saved_is_validated(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_player(sql_persistence, "p1", ratings={Sport.BASKETBALL: 1250})
    await _add_game(sql_persistence, _game("g1", min_rating=1200))

    with pytest.raises(TransactionConflictError, match="Player p1"):
        async with sql_persistence.transaction() as tx:
            game = await tx.get_game("g1")
            profile = await tx.get_player("p1")
            assert profile.rating_for(Sport.BASKETBALL) >= game.min_rating

            async with sql_persistence.transaction() as other:
                current = await other.get_player("p1")
                current.ratings[Sport.BASKETBALL] = 1100
                other.save_player(current)

            game.players.append("p1")
            tx.save_game(game)

    stored = await sql_persistence.get_game("g1")
    assert stored.players == ["host"]
    assert stored.version == 0


@pytest.mark.asyncio
async def test_read_only_transaction_never_conflicts(sql_persistence):
    await _add_player(sql_persistence, "p1")

    async with sql_persistence.transaction() as tx:
        before = await tx.get_player("p1")
        async with sql_persistence.transaction() as other:
            current = await other.get_player("p1")
            current.games_played = 3
            other.save_player(current)

    assert before.games_played == 0
    assert (await sql_persistence.get_player("p1")).games_played == 3


@pytest.mark.asyncio
async def test_duplicate_insert_conflicts(sql_persistence):
    await _add_player(sql_persistence, "p1")

    with pytest.raises(TransactionConflictError):
        await _add_player(sql_persistence, "p1")


@pytest.mark.asyncio
async def test_corrupt_row_raises(sql_persistence, session_factory):
    await _add_player(sql_persistence, "host")
    async with session_factory() as session:
        session.add(models.Game(
            id="bad",
            host_id="host",
            sport="curling",
            latitude=0.0,
            longitude=0.0,
            start_time=START,
            duration_minutes=60,
            max_players=4,
            skill_level="casual",
            players=["host"],
            checked_in=[],
            status="open",
            version=0,
        ))
        await session.commit()

    with pytest.raises(CorruptRecordError):
        await sql_persistence.get_game("bad")


@pytest.mark.asyncio
async def test_list_games_filters_and_order(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_game(sql_persistence, _game("late", start_time=START + timedelta(hours=3)))
    await _add_game(sql_persistence, _game("early", start_time=START + timedelta(hours=1)))
    await _add_game(sql_persistence, _game(
        "soccer", sport=Sport.SOCCER, skill_level="competitive", status=GameStatus.CANCELLED
    ))

    assert [g.id for g in await sql_persistence.list_games()] == ["soccer", "early", "late"]
    assert [g.id for g in await sql_persistence.list_games(sport=Sport.BASKETBALL)] == ["early", "late"]
    assert [g.id for g in await sql_persistence.list_games(skill_level="competitive")] == ["soccer"]
    assert [g.id for g in await sql_persistence.list_games(status=GameStatus.OPEN)] == ["early", "late"]


@pytest.mark.asyncio
async def test_list_completed_games_for_player(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_game(sql_persistence, _game(
        "older", status=GameStatus.COMPLETED, players=["host", "p1"], start_time=START - timedelta(days=2)
    ))
    await _add_game(sql_persistence, _game(
        "newer", status=GameStatus.COMPLETED, players=["host", "p1"], start_time=START - timedelta(days=1)
    ))
    await _add_game(sql_persistence, _game("other", status=GameStatus.COMPLETED))
    await _add_game(sql_persistence, _game("open", players=["host", "p1"]))

    completed = await sql_persistence.list_completed_games("p1")
    assert [g.id for g in completed] == ["newer", "older"]


@pytest.mark.asyncio
async def test_rating_changes(sql_persistence):
    await _add_player(sql_persistence, "host")
    await _add_player(sql_persistence, "p1")
    await _add_game(sql_persistence, _game("g1"))
    await _add_game(sql_persistence, _game("g2"))

    async with sql_persistence.transaction() as tx:
        tx.add_rating_change(RatingChange(
            game_id="g2", player_id="p1", sport=Sport.BASKETBALL,
            rating_before=1216, rating_after=1200, rating_change=-16,
            created_at=START + timedelta(days=1),
        ))
        tx.add_rating_change(RatingChange(
            game_id="g1", player_id="p1", sport=Sport.BASKETBALL,
            rating_before=1200, rating_after=1216, rating_change=16,
            created_at=START,
        ))

    changes = await sql_persistence.list_rating_changes("p1")
    assert [c.game_id for c in changes] == ["g1", "g2"]
    assert changes[0].rating_change == 16
    assert changes[0].created_at == START
    assert await sql_persistence.list_rating_changes("host") == []

    # One record per player per game
    with pytest.raises(TransactionConflictError):
        async with sql_persistence.transaction() as tx:
            tx.add_rating_change(RatingChange(
                game_id="g1", player_id="p1", sport=Sport.BASKETBALL,
                rating_before=1200, rating_after=1216, rating_change=16,
            ))


@pytest.mark.asyncio
async def test_committed_games_are_published(sql_persistence):
    await _add_player(sql_persistence, "host")
    published = []
    sql_persistence.subscribe("g1", published.append)

    await _add_game(sql_persistence, _game("g1"))

    assert [g.id for g in published] == ["g1"]


# ──────────────────────────────────────────────────────────────
# Follow edges
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_follow_edges(sql_persistence):
    for player_id in ("alice", "bob", "carol"):
        await _add_player(sql_persistence, player_id)

    assert await sql_persistence.add_follow("alice", "bob") is True
    assert await sql_persistence.add_follow("alice", "bob") is False
    assert await sql_persistence.add_follow("alice", "carol") is True
    assert await sql_persistence.add_follow("carol", "bob") is True

    assert await sql_persistence.list_following("alice") == ["bob", "carol"]
    assert await sql_persistence.list_followers("bob") == ["alice", "carol"]
    assert await sql_persistence.is_following("alice", "bob")
    assert not await sql_persistence.is_following("bob", "alice")

    assert await sql_persistence.remove_follow("alice", "bob") is True
    assert await sql_persistence.remove_follow("alice", "bob") is False
    assert await sql_persistence.list_following("alice") == ["carol"]


# ──────────────────────────────────────────────────────────────
# Lifecycle against SQL
# ──────────────────────────────────────────────────────────────


class _Clock:
    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current


class _AtCourt(PositionProvider):
    async def current_position(self, player_id):
        return Coordinates(40.7129, -74.0061)


@pytest.mark.asyncio
async def test_full_lifecycle(sql_persistence):
    clock = _Clock(START - timedelta(hours=2))
    manager = GameLifecycleManager(sql_persistence, clock=clock, position_provider=_AtCourt())
    await player_service.create_profile_if_not_exists(sql_persistence, "host", "Host")
    await player_service.create_profile_if_not_exists(sql_persistence, "p1", "Player One")
    await player_service.create_profile_if_not_exists(sql_persistence, "no_show", "No Show")

    game = await manager.create_game(
        "host",
        sport=Sport.BASKETBALL,
        location={"latitude": 40.7128, "longitude": -74.0060, "name": "Rucker Park"},
        start_time=START,
        duration_minutes=60,
        max_players=4,
        skill_level="casual",
        recurrence={"frequency": "weekly"},
    )
    await manager.join_game(game.id, "p1")
    await manager.join_game(game.id, "no_show")

    clock.current = START - timedelta(minutes=10)
    await manager.check_in(game.id, "host")
    await manager.check_in(game.id, "p1")
    started = await manager.start_game(game.id, "host")
    assert started.penalized == ["no_show"]

    await manager.submit_results(game.id, "host", ["host"], ["p1"], 10, 5)
    await manager.confirm_results(game.id, "p1")
    completed = await manager.confirm_results(game.id, "host")
    await manager.wait_for_background_tasks()

    assert completed.status == GameStatus.COMPLETED
    host = await sql_persistence.get_player("host")
    p1 = await sql_persistence.get_player("p1")
    no_show = await sql_persistence.get_player("no_show")
    assert host.rating_for(Sport.BASKETBALL) == 1216
    assert p1.rating_for(Sport.BASKETBALL) == 1184
    assert (host.games_played, host.games_attended) == (1, 1)
    assert (no_show.reliability_score, no_show.games_played, no_show.games_attended) == (95, 1, 0)

    with pytest.raises(StateError):
        await manager.confirm_results(game.id, "p1")

    history = await sql_persistence.list_rating_changes("host")
    assert len(history) == 1
    assert history[0].rating_after == 1216

    next_games = await sql_persistence.list_games(status=GameStatus.OPEN)
    assert len(next_games) == 1
    assert next_games[0].start_time == START + timedelta(days=7)
    assert next_games[0].recurrence.parent_game_id == game.id


async def _pending_game(manager, clock, host_id, guest_id, team1, team2):
    """Drive a two-player game to pending_results with the given teams."""
    clock.current = START - timedelta(hours=2)
    game = await manager.create_game(
        host_id,
        sport=Sport.BASKETBALL,
        location={"latitude": 40.7128, "longitude": -74.0060, "name": "Rucker Park"},
        start_time=START,
        duration_minutes=60,
        max_players=2,
        skill_level="casual",
    )
    await manager.join_game(game.id, guest_id)
    clock.current = START - timedelta(minutes=10)
    await manager.check_in(game.id, host_id)
    await manager.check_in(game.id, guest_id)
    await manager.start_game(game.id, host_id)
    return await manager.submit_results(game.id, host_id, team1, team2, 21, 15)


async def _amy_and_zed(sql_persistence):
    clock = _Clock(START - timedelta(hours=2))
    manager = GameLifecycleManager(sql_persistence, clock=clock, position_provider=_AtCourt())
    await player_service.create_profile_if_not_exists(sql_persistence, "amy", "Amy")
    await player_service.create_profile_if_not_exists(sql_persistence, "zed", "Zed")
    return manager, clock


class _Deadlock(Exception):
    sqlstate = "40P01"


@pytest.mark.asyncio
async def test_overlapping_rating_commits_lock_players_in_id_order(sql_persistence, monkeypatch):
    manager, clock = await _amy_and_zed(sql_persistence)
    first = await _pending_game(manager, clock, "amy", "zed", team1=["zed"], team2=["amy"])
    second = await _pending_game(manager, clock, "zed", "amy", team1=["amy"], team2=["zed"])
    assert first.results.participants == ["zed", "amy"]
    assert second.results.participants == ["amy", "zed"]

    locked = []
    apply_update = SqlTransaction._apply_versioned_update

    async def recording_update(self, model, entity_id, version, values):
        if model is models.Player:
            locked.append(entity_id)
        return await apply_update(self, model, entity_id, version, values)

    monkeypatch.setattr(SqlTransaction, "_apply_versioned_update", recording_update)

    await manager.confirm_results(first.id, "zed")
    await manager.confirm_results(second.id, "zed")
    assert (await manager.confirm_results(first.id, "amy")).status == GameStatus.COMPLETED
    assert (await manager.confirm_results(second.id, "amy")).status == GameStatus.COMPLETED

    # Team order differs between the games; the row lock order doesn't
    assert locked == ["amy", "zed", "amy", "zed"]
    assert len(await sql_persistence.list_rating_changes("amy")) == 2
    assert (await sql_persistence.get_player("zed")).games_played == 2


@pytest.mark.asyncio
async def test_deadlock_is_retried_as_write_conflict(sql_persistence, monkeypatch):
    manager, clock = await _amy_and_zed(sql_persistence)
    game = await _pending_game(manager, clock, "amy", "zed", team1=["amy"], team2=["zed"])
    await manager.confirm_results(game.id, "zed")

    aborted = []
    apply_update = SqlTransaction._apply_versioned_update

    async def deadlock_once(self, model, entity_id, version, values):
        if model is models.Player and not aborted:
            aborted.append(entity_id)
            raise DBAPIError("UPDATE players", None, _Deadlock("deadlock detected"))
        return await apply_update(self, model, entity_id, version, values)

    monkeypatch.setattr(SqlTransaction, "_apply_versioned_update", deadlock_once)

    completed = await manager.confirm_results(game.id, "amy")

    assert aborted == ["amy"]
    assert completed.status == GameStatus.COMPLETED
    assert completed.results.confirmed_by == ["zed", "amy"]
    history = await sql_persistence.list_rating_changes("amy")
    assert [change.rating_after for change in history] == [1216]


@pytest.mark.asyncio
async def test_lock_conflicts_map_to_write_conflict(sql_persistence):
    await _add_player(sql_persistence, "p1")

    with pytest.raises(TransactionConflictError):
        async with sql_persistence.transaction() as tx:
            await tx.get_player("p1")
            raise DBAPIError("SELECT", None, _Deadlock("deadlock detected"))

    with pytest.raises(DBAPIError):
        async with sql_persistence.transaction() as tx:
            await tx.get_player("p1")
            raise DBAPIError("SELECT", None, Exception("connection reset"))


def test_is_lock_conflict_reads_sqlstate():
    class Serialization(Exception):
        pgcode = "40001"

    class Unique(Exception):
        sqlstate = "23505"

    assert is_lock_conflict(DBAPIError("UPDATE", None, _Deadlock()))
    assert is_lock_conflict(DBAPIError("UPDATE", None, Serialization()))
    assert not is_lock_conflict(DBAPIError("UPDATE", None, Unique()))
    assert not is_lock_conflict(DBAPIError("UPDATE", None, Exception("boom")))
