"""
Game lifecycle service.

Owns the game state machine:

    open -> in_progress -> pending_results -> completed
    open | in_progress -> cancelled

and every side effect attached to its transitions: no-show reliability
penalties at start, the rating commit when a strict majority of
participants confirms the submitted score, and spawning the next
occurrence of a recurring game once it completes or is cancelled.

All writes go through Persistence.transaction(). Conflicting writes are
retried by re-running the whole read-check-write step, so guards are always
evaluated against fresh state.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    TypeVar,
    Union,
)

from pydantic import ValidationError as SchemaError

from pickup.database.persistence import Persistence, Transaction
from pickup.models.domain import (
    Game,
    GameLocation,
    GameResult,
    GameStatus,
    PlayerProfile,
    RatingChange,
    Recurrence,
    RecurrenceFrequency,
    SkillLevel,
    Sport,
)
from pickup.services import calculation_service, reliability_service
from pickup.services.position_service import PositionProvider, UnavailablePositionProvider
from pickup.utils import geo_utils
from pickup.utils.constants import (
    CHECK_IN_RADIUS_METERS,
    CHECK_IN_WINDOW_MINUTES,
    K,
    MIN_PLAYERS,
    RECURRENCE_MAX_LOOKAHEAD_DAYS,
)
from pickup.utils.datetime_utils import SystemClock, ensure_utc
from pickup.utils.exceptions import (
    AuthorizationError,
    CapacityError,
    CorruptRecordError,
    EligibilityError,
    GeofenceError,
    NotFoundError,
    PreconditionError,
    StateError,
    TransactionConflictError,
    ValidationError,
    WindowError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECURRENCE_INTERVALS = {
    RecurrenceFrequency.WEEKLY: timedelta(days=7),
    RecurrenceFrequency.BIWEEKLY: timedelta(days=14),
}


class CheckInStatus(NamedTuple):
    """Check-in window state for display."""

    window_open: bool
    opens_in_ms: int


@dataclass
class StartResult:
    """Outcome of starting a game: the game plus per-player penalty results."""

    game: Game
    penalized: List[str] = field(default_factory=list)
    penalty_failures: Dict[str, str] = field(default_factory=dict)


class GameLifecycleManager:
    """
    Runs lifecycle operations for pickup games.

    Args:
        persistence: Storage backend
        clock: Object with now() returning the current instant (defaults to system UTC)
        position_provider: Default source of live positions for check-in
        check_in_radius_meters: Maximum distance from the game for check-in
        check_in_window_minutes: Minutes before/after start that check-in is accepted
        k_factor: Elo K-factor for rating commits
        max_transaction_attempts: Attempts per operation before a conflict is raised
        on_background_error: Called with (game_id, exception) when a background
            recurrence spawn fails
    """

    def __init__(
        self,
        persistence: Persistence,
        clock=None,
        position_provider: Optional[PositionProvider] = None,
        *,
        check_in_radius_meters: float = CHECK_IN_RADIUS_METERS,
        check_in_window_minutes: float = CHECK_IN_WINDOW_MINUTES,
        k_factor: float = K,
        max_transaction_attempts: int = 3,
        on_background_error: Optional[Callable[[str, Exception], None]] = None,
    ):
        if max_transaction_attempts < 1:
            raise ValueError("max_transaction_attempts must be at least 1")
        self.persistence = persistence
        self.clock = clock or SystemClock()
        self.position_provider = position_provider or UnavailablePositionProvider()
        self.check_in_radius_meters = check_in_radius_meters
        self.check_in_window_minutes = check_in_window_minutes
        self.k_factor = k_factor
        self.max_transaction_attempts = max_transaction_attempts
        self.on_background_error = on_background_error
        self._background_tasks: Set[asyncio.Task] = set()

    # ========================================================================
    # Helpers
    # ========================================================================

    def now(self) -> datetime:
        return ensure_utc(self.clock.now())

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a transactional operation, re-running it on optimistic conflicts."""
        for attempt in range(1, self.max_transaction_attempts + 1):
            try:
                return await operation()
            except TransactionConflictError:
                if attempt == self.max_transaction_attempts:
                    logger.warning(
                        f"{description}: giving up after {attempt} conflicting attempts"
                    )
                    raise
                logger.info(f"{description}: write conflict, retrying (attempt {attempt})")
        raise AssertionError("unreachable")

    @staticmethod
    async def _load_game(tx: Transaction, game_id: str) -> Game:
        game = await tx.get_game(game_id)
        if game is None:
            raise NotFoundError(f"Game {game_id} not found")
        return game

    @staticmethod
    async def _load_player(tx: Transaction, player_id: str) -> PlayerProfile:
        profile = await tx.get_player(player_id)
        if profile is None:
            raise NotFoundError(f"Player {player_id} not found")
        return profile

    def check_in_status(self, game: Game) -> CheckInStatus:
        now = self.now()
        return CheckInStatus(
            window_open=geo_utils.is_within_window(
                game.start_time, self.check_in_window_minutes, now=now
            ),
            opens_in_ms=geo_utils.time_until_window_opens(
                game.start_time, self.check_in_window_minutes, now=now
            ),
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_game(self, game_id: str) -> Game:
        game = await self.persistence.get_game(game_id)
        if game is None:
            raise NotFoundError(f"Game {game_id} not found")
        return game

    async def list_games(
        self,
        sport: Optional[Sport] = None,
        skill_level: Optional[SkillLevel] = None,
        status: Optional[GameStatus] = None,
        near: Optional[geo_utils.Coordinates] = None,
        radius_meters: Optional[float] = None,
    ) -> List[Game]:
        """
        List games, earliest start first.

        When near is given, games are ordered nearest first and, if
        radius_meters is also given, limited to games within that radius.
        """
        games = await self.persistence.list_games(
            sport=sport, skill_level=skill_level, status=status
        )
        if near is None:
            return games

        with_distance = [
            (geo_utils.calculate_distance_meters(near, game.location.coordinates), game)
            for game in games
        ]
        if radius_meters is not None:
            with_distance = [(d, g) for d, g in with_distance if d <= radius_meters]
        with_distance.sort(key=lambda pair: pair[0])
        return [game for _, game in with_distance]

    # ========================================================================
    # Create
    # ========================================================================

    async def create_game(
        self,
        host_id: str,
        *,
        sport: Union[Sport, str],
        location: Union[GameLocation, dict],
        start_time: datetime,
        duration_minutes: int,
        max_players: int,
        skill_level: Union[SkillLevel, str],
        min_rating: Optional[int] = None,
        recurrence: Optional[Union[Recurrence, dict]] = None,
    ) -> Game:
        """
        Create a game in the open state with the host auto-joined.

        Raises:
            ValidationError: Start not in the future, fewer than 2 max players,
                non-positive duration, negative min rating or malformed fields
            NotFoundError: Host has no profile
        """
        start_time = ensure_utc(start_time)
        if start_time <= self.now():
            raise ValidationError("Game start time must be in the future")
        if max_players < MIN_PLAYERS:
            raise ValidationError(f"A game needs at least {MIN_PLAYERS} players")
        if duration_minutes <= 0:
            raise ValidationError("Duration must be positive")
        if min_rating is not None and min_rating < 0:
            raise ValidationError("Minimum rating cannot be negative")

        try:
            if isinstance(recurrence, dict):
                recurrence = Recurrence.model_validate(recurrence)
            if recurrence is not None and recurrence.frequency == RecurrenceFrequency.NONE:
                recurrence = None
            if recurrence is not None and recurrence.day_of_week is None:
                recurrence = recurrence.model_copy(update={"day_of_week": start_time.weekday()})

            game = Game(
                id=str(uuid.uuid4()),
                host_id=host_id,
                sport=sport,
                location=location,
                start_time=start_time,
                duration_minutes=duration_minutes,
                max_players=max_players,
                skill_level=skill_level,
                min_rating=min_rating,
                players=[host_id],
                checked_in=[],
                status=GameStatus.OPEN,
                recurrence=recurrence,
                created_at=self.now(),
            )
        except SchemaError as e:
            raise ValidationError(f"Invalid game: {e}") from e

        async with self.persistence.transaction() as tx:
            await self._load_player(tx, host_id)
            tx.add_game(game)

        logger.info(f"Player {host_id} created {game.sport.value} game {game.id} at {start_time}")
        return game

    # ========================================================================
    # Membership
    # ========================================================================

    async def join_game(self, game_id: str, player_id: str) -> Game:
        """
        Add a player to an open game. Joining twice is a no-op.

        Raises:
            StateError: Game is not open
            CapacityError: Game is full
            EligibilityError: Player's rating for the sport is below the minimum
            NotFoundError: Game or player doesn't exist
        """
        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if game.status != GameStatus.OPEN:
                    raise StateError(f"Cannot join a game that is {game.status.value}")
                if player_id in game.players:
                    return game
                if game.is_full:
                    raise CapacityError("Game is full")

                profile = await self._load_player(tx, player_id)
                if game.min_rating is not None:
                    rating = profile.rating_for(game.sport)
                    if rating < game.min_rating:
                        raise EligibilityError(rating, game.min_rating)

                game.players.append(player_id)
                tx.save_game(game)
            return game

        game = await self._with_retry(f"join game {game_id}", operation)
        logger.info(f"Player {player_id} joined game {game_id}")
        return game

    async def leave_game(self, game_id: str, player_id: str) -> Game:
        """
        Remove a non-host player from an open game. Leaving twice is a no-op.

        Raises:
            AuthorizationError: Player is the host (host must cancel instead)
            StateError: Game is not open
        """
        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if game.is_host(player_id):
                    raise AuthorizationError("The host cannot leave; cancel the game instead")
                if game.status != GameStatus.OPEN:
                    raise StateError(f"Cannot leave a game that is {game.status.value}")
                if player_id not in game.players:
                    return game

                game.players.remove(player_id)
                if player_id in game.checked_in:
                    game.checked_in.remove(player_id)
                tx.save_game(game)
            return game

        game = await self._with_retry(f"leave game {game_id}", operation)
        logger.info(f"Player {player_id} left game {game_id}")
        return game

    # ========================================================================
    # Check-in
    # ========================================================================

    async def check_in(
        self,
        game_id: str,
        player_id: str,
        position_provider: Optional[PositionProvider] = None,
    ) -> Game:
        """
        Check a joined player in, gated by time window and distance.

        Args:
            game_id: Game to check in to
            player_id: Player checking in
            position_provider: Overrides the manager's default provider for this call

        Raises:
            AuthorizationError: Player hasn't joined the game
            StateError: Game is not open
            WindowError: Outside the check-in window
            PositionError: Position could not be obtained
            GeofenceError: Too far from the game location (carries the distance)
        """
        game = await self.get_game(game_id)
        self._check_in_guards(game, player_id)
        if player_id in game.checked_in:
            return game

        if not geo_utils.is_within_window(
            game.start_time, self.check_in_window_minutes, now=self.now()
        ):
            opens_in = geo_utils.time_until_window_opens(
                game.start_time, self.check_in_window_minutes, now=self.now()
            )
            if opens_in > 0:
                raise WindowError(
                    f"Check-in opens {self.check_in_window_minutes:g} minutes before the game starts"
                )
            raise WindowError("The check-in window for this game has closed")

        provider = position_provider or self.position_provider
        position = await provider.current_position(player_id)
        distance = geo_utils.calculate_distance_meters(position, game.location.coordinates)
        if distance > self.check_in_radius_meters:
            raise GeofenceError(distance, self.check_in_radius_meters)

        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                current = await self._load_game(tx, game_id)
                self._check_in_guards(current, player_id)
                if player_id in current.checked_in:
                    return current
                current.checked_in.append(player_id)
                tx.save_game(current)
            return current

        game = await self._with_retry(f"check in to game {game_id}", operation)
        logger.info(f"Player {player_id} checked in to game {game_id} ({distance:.0f}m away)")
        return game

    @staticmethod
    def _check_in_guards(game: Game, player_id: str) -> None:
        if player_id not in game.players:
            raise AuthorizationError("Only players who joined the game can check in")
        if game.status != GameStatus.OPEN:
            raise StateError(f"Cannot check in to a game that is {game.status.value}")

    # ========================================================================
    # Start
    # ========================================================================

    async def start_game(self, game_id: str, actor_id: str) -> StartResult:
        """
        Start a game (host only) and penalize every joined player who didn't check in.

        The transition commits first; each no-show is then penalized in its
        own transaction. A failed penalty is logged and reported in the
        result, never raised.

        Raises:
            AuthorizationError: Actor is not the host
            StateError: Game is not open
            WindowError: Check-in window hasn't opened yet
            PreconditionError: Nobody has checked in
        """
        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if not game.is_host(actor_id):
                    raise AuthorizationError("Only the host can start the game")
                if game.status != GameStatus.OPEN:
                    raise StateError(f"Cannot start a game that is {game.status.value}")
                if not geo_utils.has_window_opened(
                    game.start_time, self.check_in_window_minutes, now=self.now()
                ):
                    raise WindowError("Cannot start before the check-in window opens")
                if not game.checked_in:
                    raise PreconditionError("At least one player must check in before starting")

                game.status = GameStatus.IN_PROGRESS
                tx.save_game(game)
            return game

        game = await self._with_retry(f"start game {game_id}", operation)
        no_shows = [p for p in game.players if p not in game.checked_in]
        logger.info(
            f"Game {game_id} started with {len(game.checked_in)} checked in, "
            f"{len(no_shows)} no-show(s)"
        )

        result = StartResult(game=game)
        for player_id in no_shows:
            try:
                await self._apply_no_show_penalty(player_id)
                result.penalized.append(player_id)
            except Exception as e:
                logger.error(
                    f"Failed to apply no-show penalty to player {player_id} "
                    f"for game {game_id}: {e}",
                    exc_info=True,
                )
                result.penalty_failures[player_id] = str(e)
        return result

    async def _apply_no_show_penalty(self, player_id: str) -> PlayerProfile:
        async def operation() -> PlayerProfile:
            async with self.persistence.transaction() as tx:
                profile = await self._load_player(tx, player_id)
                profile.reliability_score = reliability_service.penalize(
                    profile.reliability_score
                )
                profile.games_played += 1
                tx.save_player(profile)
            return profile

        return await self._with_retry(f"penalize player {player_id}", operation)

    # ========================================================================
    # Results
    # ========================================================================

    async def submit_results(
        self,
        game_id: str,
        actor_id: str,
        team1: Sequence[str],
        team2: Sequence[str],
        team1_score: int,
        team2_score: int,
    ) -> Game:
        """
        Record the final score (host only) and wait for confirmations.

        Raises:
            AuthorizationError: Actor is not the host
            StateError: Game is not in progress
            ValidationError: Teams are empty, overlap, contain non-members, or
                scores are not non-negative integers
        """
        for score in (team1_score, team2_score):
            if isinstance(score, bool) or not isinstance(score, int):
                raise ValidationError("Scores must be whole numbers")
            if score < 0:
                raise ValidationError("Scores cannot be negative")
        team1 = list(team1)
        team2 = list(team2)
        if not team1 or not team2:
            raise ValidationError("Both teams need at least one player")
        if len(set(team1)) != len(team1) or len(set(team2)) != len(team2):
            raise ValidationError("A player is listed twice on the same team")
        if set(team1) & set(team2):
            raise ValidationError("A player cannot be on both teams")

        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if not game.is_host(actor_id):
                    raise AuthorizationError("Only the host can submit results")
                if game.status != GameStatus.IN_PROGRESS:
                    raise StateError(
                        f"Cannot submit results for a game that is {game.status.value}"
                    )
                outsiders = [p for p in team1 + team2 if p not in game.players]
                if outsiders:
                    raise ValidationError(
                        f"Players not in this game: {', '.join(outsiders)}"
                    )

                game.results = GameResult(
                    team1=team1,
                    team2=team2,
                    team1_score=team1_score,
                    team2_score=team2_score,
                    confirmed_by=[],
                )
                game.status = GameStatus.PENDING_RESULTS
                tx.save_game(game)
            return game

        game = await self._with_retry(f"submit results for game {game_id}", operation)
        logger.info(f"Results submitted for game {game_id}: {team1_score}-{team2_score}")
        return game

    async def confirm_results(self, game_id: str, player_id: str) -> Game:
        """
        Confirm the submitted score. The confirmation that gives a strict
        majority of participants commits ratings in the same transaction.

        If the rating commit can't be computed (e.g. a participant profile is
        missing) the confirmation is still recorded, the game stays in
        pending_results and the error is raised; the next confirmation or an
        operator retry runs the commit again.

        Raises:
            StateError: Game is not awaiting confirmation, or player already confirmed
            AuthorizationError: Player is not on either team
        """
        async def operation() -> Game:
            commit_error = None
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if game.status != GameStatus.PENDING_RESULTS or game.results is None:
                    raise StateError(
                        f"Cannot confirm results for a game that is {game.status.value}"
                    )
                if player_id not in game.results.participants:
                    raise AuthorizationError("Only players on either team can confirm results")
                if player_id in game.results.confirmed_by:
                    raise StateError("You already confirmed these results")

                game.results.confirmed_by.append(player_id)
                if game.results.has_majority():
                    try:
                        await self._commit_ratings(tx, game)
                    except (NotFoundError, CorruptRecordError) as e:
                        commit_error = e
                tx.save_game(game)

            if commit_error is not None:
                logger.error(
                    f"Rating commit for game {game_id} failed; game left pending: {commit_error}"
                )
                raise commit_error
            return game

        game = await self._with_retry(f"confirm results for game {game_id}", operation)
        logger.info(
            f"Player {player_id} confirmed results for game {game_id} "
            f"({len(game.results.confirmed_by)}/{len(game.results.participants)})"
        )
        if game.status == GameStatus.COMPLETED:
            self._schedule_recurrence(game)
        return game

    async def retry_rating_commit(self, game_id: str) -> Game:
        """
        Operator retry of the rating commit for a game stuck in pending_results.

        Raises:
            StateError: Game is not pending results
            PreconditionError: Confirmations don't yet form a majority
        """
        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if game.status != GameStatus.PENDING_RESULTS or game.results is None:
                    raise StateError(
                        f"Cannot commit ratings for a game that is {game.status.value}"
                    )
                if not game.results.has_majority():
                    raise PreconditionError("Results have not been confirmed by a majority")
                await self._commit_ratings(tx, game)
                tx.save_game(game)
            return game

        game = await self._with_retry(f"retry rating commit for game {game_id}", operation)
        logger.info(f"Operator retry committed ratings for game {game_id}")
        self._schedule_recurrence(game)
        return game

    async def _commit_ratings(self, tx: Transaction, game: Game) -> None:
        """
        Stage new ratings and counters for every participant and complete the game.

        Every read happens before anything is staged, so a failure leaves the
        transaction untouched.
        """
        results = game.results
        profiles = {}
        for player_id in results.participants:
            profiles[player_id] = await self._load_player(tx, player_id)

        sport = game.sport
        new_ratings = calculation_service.process_match(
            {p: profiles[p].rating_for(sport) for p in results.team1},
            {p: profiles[p].rating_for(sport) for p in results.team2},
            results.team1_score,
            results.team2_score,
            k=self.k_factor,
        )

        committed_at = self.now()
        for player_id, profile in profiles.items():
            before = profile.rating_for(sport)
            after = new_ratings[player_id]
            profile.ratings[sport] = after
            profile.games_played += 1
            profile.games_attended += 1
            tx.save_player(profile)
            tx.add_rating_change(RatingChange(
                game_id=game.id,
                player_id=player_id,
                sport=sport,
                rating_before=before,
                rating_after=after,
                rating_change=after - before,
                created_at=committed_at,
            ))

        game.status = GameStatus.COMPLETED

    # ========================================================================
    # Cancel
    # ========================================================================

    async def cancel_game(self, game_id: str, actor_id: str, *, operator: bool = False) -> Game:
        """
        Cancel an open or in-progress game. No rating or reliability effects.

        Args:
            game_id: Game to cancel
            actor_id: Player (or operator) cancelling
            operator: Operator cancellations skip the host check

        Raises:
            AuthorizationError: Actor is not the host and not an operator
            StateError: Game is already pending results, completed or cancelled
        """
        async def operation() -> Game:
            async with self.persistence.transaction() as tx:
                game = await self._load_game(tx, game_id)
                if not operator and not game.is_host(actor_id):
                    raise AuthorizationError("Only the host can cancel the game")
                if game.status not in (GameStatus.OPEN, GameStatus.IN_PROGRESS):
                    raise StateError(f"Cannot cancel a game that is {game.status.value}")
                game.status = GameStatus.CANCELLED
                tx.save_game(game)
            return game

        game = await self._with_retry(f"cancel game {game_id}", operation)
        logger.info(
            f"Game {game_id} cancelled by {'operator ' if operator else ''}{actor_id}"
        )
        self._schedule_recurrence(game)
        return game

    # ========================================================================
    # Recurrence
    # ========================================================================

    def _schedule_recurrence(self, game: Game) -> None:
        if game.recurrence is None or game.recurrence.frequency == RecurrenceFrequency.NONE:
            return
        task = asyncio.create_task(self._spawn_in_background(game))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _spawn_in_background(self, game: Game) -> Optional[Game]:
        try:
            return await self.spawn_next_occurrence(game)
        except Exception as e:
            logger.error(
                f"Failed to create next occurrence of recurring game {game.id}: {e}",
                exc_info=True,
            )
            if self.on_background_error is not None:
                try:
                    self.on_background_error(game.id, e)
                except Exception as callback_error:
                    logger.warning(f"Background error callback failed: {callback_error}")
            return None

    async def spawn_next_occurrence(self, game: Game) -> Optional[Game]:
        """
        Create the next occurrence of a recurring game.

        Returns:
            The new game, or None when the game doesn't recur or the next start
            is in the past or more than 30 days out
        """
        recurrence = game.recurrence
        if recurrence is None or recurrence.frequency not in RECURRENCE_INTERVALS:
            return None

        next_start = game.start_time + RECURRENCE_INTERVALS[recurrence.frequency]
        now = self.now()
        if next_start <= now:
            logger.info(f"Not spawning next occurrence of game {game.id}: {next_start} has passed")
            return None
        if next_start > now + timedelta(days=RECURRENCE_MAX_LOOKAHEAD_DAYS):
            logger.info(
                f"Not spawning next occurrence of game {game.id}: {next_start} is more than "
                f"{RECURRENCE_MAX_LOOKAHEAD_DAYS} days out"
            )
            return None

        next_game = Game(
            id=str(uuid.uuid4()),
            host_id=game.host_id,
            sport=game.sport,
            location=game.location.model_copy(),
            start_time=next_start,
            duration_minutes=game.duration_minutes,
            max_players=game.max_players,
            skill_level=game.skill_level,
            min_rating=game.min_rating,
            players=[game.host_id],
            checked_in=[],
            status=GameStatus.OPEN,
            recurrence=Recurrence(
                frequency=recurrence.frequency,
                day_of_week=next_start.weekday(),
                parent_game_id=recurrence.parent_game_id or game.id,
            ),
            created_at=now,
        )
        async with self.persistence.transaction() as tx:
            tx.add_game(next_game)

        logger.info(f"Spawned game {next_game.id} as next occurrence of game {game.id}")
        return next_game

    async def wait_for_background_tasks(self) -> None:
        """Wait until every pending recurrence spawn has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))
