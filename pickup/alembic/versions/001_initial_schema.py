"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates players, games, friends and rating_history.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "players",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("basketball_rating", sa.Integer(), nullable=False, server_default="1200"),
        sa.Column("soccer_rating", sa.Integer(), nullable=False, server_default="1200"),
        sa.Column("reliability_score", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("games_played", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("games_attended", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "reliability_score >= 0 AND reliability_score <= 100",
            name="ck_players_reliability_range",
        ),
    )

    op.create_table(
        "games",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("host_id", sa.String(), nullable=False),
        sa.Column("sport", sa.String(20), nullable=False),
        sa.Column("location_name", sa.String(), nullable=False, server_default=""),
        sa.Column("address", sa.String(), nullable=False, server_default=""),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("max_players", sa.Integer(), nullable=False),
        sa.Column("skill_level", sa.String(20), nullable=False),
        sa.Column("min_rating", sa.Integer(), nullable=True),
        sa.Column("players", JSONType, nullable=False),
        sa.Column("checked_in", JSONType, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("results", JSONType, nullable=True),
        sa.Column("recurrence_frequency", sa.String(20), nullable=True),
        sa.Column("recurrence_day_of_week", sa.Integer(), nullable=True),
        sa.Column("parent_game_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["host_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["parent_game_id"], ["games.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("max_players >= 2", name="ck_games_max_players"),
    )
    op.create_index("idx_games_status_start", "games", ["status", "start_time"])
    op.create_index("idx_games_sport", "games", ["sport"])
    op.create_index("idx_games_host", "games", ["host_id"])
    op.create_index("idx_games_parent", "games", ["parent_game_id"])

    op.create_table(
        "friends",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("follower_id", sa.String(), nullable=False),
        sa.Column("following_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["follower_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["following_id"], ["players.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("follower_id", "following_id", name="uq_friends_follower_following"),
        sa.CheckConstraint("follower_id <> following_id", name="ck_friends_no_self_follow"),
    )
    op.create_index("idx_friends_follower", "friends", ["follower_id"])
    op.create_index("idx_friends_following", "friends", ["following_id"])

    op.create_table(
        "rating_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("game_id", sa.String(36), nullable=False),
        sa.Column("player_id", sa.String(), nullable=False),
        sa.Column("sport", sa.String(20), nullable=False),
        sa.Column("rating_before", sa.Integer(), nullable=False),
        sa.Column("rating_after", sa.Integer(), nullable=False),
        sa.Column("rating_change", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["game_id"], ["games.id"]),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("game_id", "player_id", name="uq_rating_history_game_player"),
    )
    op.create_index("idx_rating_history_player", "rating_history", ["player_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_rating_history_player", table_name="rating_history")
    op.drop_table("rating_history")
    op.drop_index("idx_friends_following", table_name="friends")
    op.drop_index("idx_friends_follower", table_name="friends")
    op.drop_table("friends")
    op.drop_index("idx_games_parent", table_name="games")
    op.drop_index("idx_games_host", table_name="games")
    op.drop_index("idx_games_sport", table_name="games")
    op.drop_index("idx_games_status_start", table_name="games")
    op.drop_table("games")
    op.drop_table("players")
