"""
SQLAlchemy ORM models for the pickup games system.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    JSON,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from pickup.database.db import Base, UTCDateTime
from pickup.utils.constants import INITIAL_RATING, INITIAL_RELIABILITY

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Player(Base):
    """Player profiles with per-sport ratings and attendance counters."""

    __tablename__ = "players"

    id = Column(String, primary_key=True)  # Opaque identifier from the identity provider
    display_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    basketball_rating = Column(Integer, nullable=False, default=INITIAL_RATING)
    soccer_rating = Column(Integer, nullable=False, default=INITIAL_RATING)
    reliability_score = Column(Integer, nullable=False, default=INITIAL_RELIABILITY)
    games_played = Column(Integer, nullable=False, default=0)
    games_attended = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, server_default=func.now())
    version = Column(Integer, nullable=False, default=0)  # Optimistic concurrency token

    __table_args__ = (
        CheckConstraint(
            "reliability_score >= 0 AND reliability_score <= 100",
            name="ck_players_reliability_range",
        ),
    )


class Game(Base):
    """Scheduled pickup games."""

    __tablename__ = "games"

    id = Column(String(36), primary_key=True)
    host_id = Column(String, ForeignKey("players.id"), nullable=False)
    sport = Column(String(20), nullable=False)  # 'basketball', 'soccer'
    location_name = Column(String, nullable=False, default="")
    address = Column(String, nullable=False, default="")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    start_time = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    max_players = Column(Integer, nullable=False)
    skill_level = Column(String(20), nullable=False)  # 'casual', 'competitive'
    min_rating = Column(Integer, nullable=True)
    players = Column(JSONType, nullable=False, default=list)  # Joined player IDs (host included)
    checked_in = Column(JSONType, nullable=False, default=list)  # Subset of players
    status = Column(String(20), nullable=False, default="open")
    results = Column(JSONType, nullable=True)  # team1/team2/scores/confirmed_by
    recurrence_frequency = Column(String(20), nullable=True)  # 'weekly', 'biweekly'
    recurrence_day_of_week = Column(Integer, nullable=True)
    parent_game_id = Column(String(36), ForeignKey("games.id"), nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    version = Column(Integer, nullable=False, default=0)  # Optimistic concurrency token

    __table_args__ = (
        CheckConstraint("max_players >= 2", name="ck_games_max_players"),
        Index("idx_games_status_start", "status", "start_time"),
        Index("idx_games_sport", "sport"),
        Index("idx_games_host", "host_id"),
        Index("idx_games_parent", "parent_game_id"),
    )


class Friend(Base):
    """Directed follow edge (follower -> following)."""

    __tablename__ = "friends"

    id = Column(Integer, primary_key=True, autoincrement=True)
    follower_id = Column(String, ForeignKey("players.id"), nullable=False)
    following_id = Column(String, ForeignKey("players.id"), nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("follower_id", "following_id", name="uq_friends_follower_following"),
        CheckConstraint("follower_id <> following_id", name="ck_friends_no_self_follow"),
        Index("idx_friends_follower", "follower_id"),
        Index("idx_friends_following", "following_id"),
    )


class RatingHistory(Base):
    """Rating change applied to each participant when a game's results commit."""

    __tablename__ = "rating_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(String(36), ForeignKey("games.id"), nullable=False)
    player_id = Column(String, ForeignKey("players.id"), nullable=False)
    sport = Column(String(20), nullable=False)
    rating_before = Column(Integer, nullable=False)
    rating_after = Column(Integer, nullable=False)
    rating_change = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("game_id", "player_id", name="uq_rating_history_game_player"),
        Index("idx_rating_history_player", "player_id"),
    )
