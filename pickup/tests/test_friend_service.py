"""
Unit tests for friend service.

Tests follow/unfollow, duplicate prevention, follower lists and batch status.
"""

import pytest
import pytest_asyncio

from pickup.services import friend_service
from pickup.utils.exceptions import NotFoundError, StateError, ValidationError


@pytest_asyncio.fixture
async def players(create_player):
    """Create three players."""
    for player_id in ("alice", "bob", "carol"):
        await create_player(player_id)
    return ["alice", "bob", "carol"]


# ──────────────────────────────────────────────────────────────
# Follow / unfollow
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_follow(persistence, players):
    result = await friend_service.follow(persistence, "alice", "bob")

    assert result == {"follower_id": "alice", "following_id": "bob"}
    assert await persistence.is_following("alice", "bob")
    # Directed: bob doesn't follow alice back
    assert not await persistence.is_following("bob", "alice")


@pytest.mark.asyncio
async def test_cannot_follow_self(persistence, players):
    with pytest.raises(ValidationError):
        await friend_service.follow(persistence, "alice", "alice")


@pytest.mark.asyncio
async def test_cannot_follow_missing_player(persistence, players):
    with pytest.raises(NotFoundError):
        await friend_service.follow(persistence, "alice", "nobody")


@pytest.mark.asyncio
async def test_duplicate_follow_rejected(persistence, players):
    await friend_service.follow(persistence, "alice", "bob")

    with pytest.raises(StateError, match="Already following"):
        await friend_service.follow(persistence, "alice", "bob")

    assert await persistence.list_following("alice") == ["bob"]


@pytest.mark.asyncio
async def test_unfollow(persistence, players):
    await friend_service.follow(persistence, "alice", "bob")

    await friend_service.unfollow(persistence, "alice", "bob")
    assert not await persistence.is_following("alice", "bob")

    with pytest.raises(StateError, match="Not following"):
        await friend_service.unfollow(persistence, "alice", "bob")


# ──────────────────────────────────────────────────────────────
# Lists and status
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_following_and_followers(persistence, players):
    await friend_service.follow(persistence, "alice", "bob")
    await friend_service.follow(persistence, "alice", "carol")
    await friend_service.follow(persistence, "carol", "bob")

    following = await friend_service.get_following(persistence, "alice")
    assert following == [
        {"player_id": "bob", "display_name": "Bob"},
        {"player_id": "carol", "display_name": "Carol"},
    ]

    followers = await friend_service.get_followers(persistence, "bob")
    assert {f["player_id"] for f in followers} == {"alice", "carol"}

    assert await friend_service.get_followers(persistence, "alice") == []


@pytest.mark.asyncio
async def test_lists_skip_deleted_profiles(persistence, players):
    await friend_service.follow(persistence, "alice", "bob")
    await friend_service.follow(persistence, "alice", "carol")
    persistence._players.pop("carol")

    following = await friend_service.get_following(persistence, "alice")
    assert [f["player_id"] for f in following] == ["bob"]


@pytest.mark.asyncio
async def test_batch_follow_status(persistence, players):
    await friend_service.follow(persistence, "alice", "bob")
    await friend_service.follow(persistence, "carol", "alice")

    statuses = await friend_service.batch_follow_status(
        persistence, "alice", ["bob", "carol", "alice"]
    )

    assert statuses == {
        "bob": {"following": True, "followed_by": False},
        "carol": {"following": False, "followed_by": True},
    }
